from __future__ import annotations

import json
from typing import Any, Dict, Optional

from perturbzoom.errors import ConfigError
from perturbzoom.model import ColorParams, ImageRequest, Viewport
from perturbzoom.pipeline import PipelineSettings
from perturbzoom.precision import PrecisionThresholds, PrecisionTier
from perturbzoom.stages.iterate import Backend

DEFAULTS: Dict[str, Any] = {
    "width": 800,
    "height": 600,
    "center": ["-0.5", "0.0"],
    "zoom": -2.0,
    "rotation": 0.0,
    "max_iteration": 1000,
    "probe": None,
    "precision_tier": None,
    "colors": {},
    "pipeline": {
        "backend": "auto",
        "batch_iterations": 500,
        "workers": 1,
        "debounce": 0.05,
        "extra_digits": 80,
        "thresholds": {},
    },
    "output": "mandelbrot.png",
}

_COLOR_FIELDS = tuple(ColorParams.__dataclass_fields__)
_THRESHOLD_FIELDS = tuple(PrecisionThresholds.__dataclass_fields__)


def load_config(config_path: Optional[str]) -> Dict[str, Any]:
    if not config_path:
        return json.loads(json.dumps(DEFAULTS))
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            cfg = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config {config_path} is not valid JSON: {e}") from e
    if not isinstance(cfg, dict):
        raise ConfigError("Config JSON must be an object.")
    return cfg


def _point(value, field_name: str):
    if not (isinstance(value, (list, tuple)) and len(value) == 2):
        raise ConfigError(f"{field_name} must be [re, im].")
    return [str(value[0]), str(value[1])]


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = cfg.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be an object.")
    return value


def normalise_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Fill defaults and coerce types; raises ConfigError on anything invalid."""
    out = dict(DEFAULTS)
    out.update(cfg)
    try:
        out["width"] = int(out["width"])
        out["height"] = int(out["height"])
        out["zoom"] = float(out["zoom"])
        out["rotation"] = float(out["rotation"])
        out["max_iteration"] = int(out["max_iteration"])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid numeric config field: {e}") from e
    if out["width"] <= 0 or out["height"] <= 0:
        raise ConfigError("width/height must be positive.")
    if out["max_iteration"] < 1:
        raise ConfigError("max_iteration must be >= 1.")

    out["center"] = _point(out["center"], "center")
    if out.get("probe") is not None:
        out["probe"] = _point(out["probe"], "probe")
    if out.get("precision_tier") is not None:
        out["precision_tier"] = PrecisionTier.parse(out["precision_tier"]).label

    colors = _section(cfg, "colors")
    unknown = set(colors) - set(_COLOR_FIELDS)
    if unknown:
        raise ConfigError(f"Unknown color fields: {sorted(unknown)}")
    try:
        out["colors"] = {k: float(v) for k, v in colors.items()}
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid color field: {e}") from e

    pipeline = dict(DEFAULTS["pipeline"])
    pipeline.update(_section(cfg, "pipeline"))
    pipeline["backend"] = Backend.parse(pipeline["backend"]).value
    try:
        pipeline["batch_iterations"] = int(pipeline["batch_iterations"])
        pipeline["workers"] = int(pipeline["workers"])
        pipeline["debounce"] = float(pipeline["debounce"])
        pipeline["extra_digits"] = int(pipeline["extra_digits"])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid pipeline config field: {e}") from e
    if pipeline["batch_iterations"] < 1 or pipeline["workers"] < 1 or pipeline["debounce"] < 0:
        raise ConfigError("pipeline batch_iterations/workers must be >= 1 and debounce >= 0.")
    thresholds = pipeline.get("thresholds") or {}
    if not isinstance(thresholds, dict):
        raise ConfigError("pipeline.thresholds must be an object.")
    unknown = set(thresholds) - set(_THRESHOLD_FIELDS)
    if unknown:
        raise ConfigError(f"Unknown threshold fields: {sorted(unknown)}")
    try:
        pipeline["thresholds"] = {k: (None if v is None else float(v)) for k, v in thresholds.items()}
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid precision threshold: {e}") from e
    out["pipeline"] = pipeline
    out["output"] = str(out.get("output") or DEFAULTS["output"])

    try:
        request_from_config(out)
        PrecisionThresholds(**pipeline["thresholds"])
    except ConfigError:
        raise
    except ValueError as e:
        raise ConfigError(str(e)) from e
    return out


def request_from_config(cfg: Dict[str, Any]) -> ImageRequest:
    viewport = Viewport(
        width=int(cfg["width"]),
        height=int(cfg["height"]),
        center_re=str(cfg["center"][0]),
        center_im=str(cfg["center"][1]),
        zoom=float(cfg["zoom"]),
        rotation=float(cfg.get("rotation", 0.0)),
    )
    probe = cfg.get("probe")
    return ImageRequest(
        viewport=viewport,
        max_iteration=int(cfg["max_iteration"]),
        color_params=ColorParams(**cfg.get("colors", {})),
        probe_override=None if probe is None else (str(probe[0]), str(probe[1])),
        precision_tier=cfg.get("precision_tier"),
    )


def pipeline_settings_from_config(cfg: Dict[str, Any]) -> PipelineSettings:
    p = cfg.get("pipeline", DEFAULTS["pipeline"])
    return PipelineSettings(
        thresholds=PrecisionThresholds(**(p.get("thresholds") or {})),
        backend=p["backend"],
        batch_iterations=int(p["batch_iterations"]),
        workers=int(p["workers"]),
        debounce=float(p["debounce"]),
        extra_digits=int(p["extra_digits"]),
    )


def config_from_request(request: ImageRequest, settings: Optional[PipelineSettings] = None) -> Dict[str, Any]:
    """Settings document that reproduces ``request`` exactly."""
    vp = request.viewport
    cfg: Dict[str, Any] = {
        "width": vp.width,
        "height": vp.height,
        "center": [vp.center_re, vp.center_im],
        "zoom": vp.zoom,
        "rotation": vp.rotation,
        "max_iteration": request.max_iteration,
        "probe": None if request.probe_override is None else list(request.probe_override),
        "precision_tier": None if request.precision_tier is None else request.precision_tier.label,
        "colors": dict(request.color_params.__dict__),
    }
    if settings is not None:
        t = settings.thresholds
        cfg["pipeline"] = {
            "backend": settings.backend,
            "batch_iterations": settings.batch_iterations,
            "workers": settings.workers,
            "debounce": settings.debounce,
            "extra_digits": settings.extra_digits,
            "thresholds": {name: getattr(t, name) for name in _THRESHOLD_FIELDS},
        }
    return cfg
