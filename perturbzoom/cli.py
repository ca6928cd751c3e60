from __future__ import annotations

import argparse
import logging
from typing import Optional

import numpy as np
from PIL import Image
from tqdm import tqdm

from perturbzoom.config import (
    config_from_request,
    load_config,
    normalise_config,
    pipeline_settings_from_config,
    request_from_config,
)
from perturbzoom.errors import PerturbZoomError
from perturbzoom.kernels.gpu import probe_cuda
from perturbzoom.model import Frame
from perturbzoom.pipeline import PipelineCoordinator
from perturbzoom.precision import resolve_tier
from perturbzoom.renderers.cpu_mpmath import reference_escape_steps
from perturbzoom.stages.iterate import resolve_backend
from perturbzoom.util.logging_setup import (
    configure_root_logging,
    create_log_queue,
    get_logger,
    log_duration,
    parse_level,
    start_queue_listener,
)
from perturbzoom.util.manifest import build_manifest, git_commit, manifest_path_for, write_manifest
from perturbzoom.worker import RenderWorker


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="perturbzoom", description="Deep-zoom Mandelbrot renderer using perturbation theory.")
    p.add_argument("--config", type=str, default=None, help="Path to settings JSON. If omitted, uses built-in defaults.")
    p.add_argument("--backend", type=str, default=None, choices=["auto", "numpy", "cpu", "cuda"], help="Iteration backend.")
    p.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level.")
    p.add_argument("--log-file", type=str, default="perturbzoom.log", help="Log file path (rotating). Set empty to disable file logging.")
    sub = p.add_subparsers(dest="cmd", required=True)

    r = sub.add_parser("render", help="Render one image to PNG and write its run manifest.")
    r.add_argument("--output", type=str, default=None, help="Output PNG (defaults to config.output).")
    r.add_argument("--max-iteration", type=int, default=None, help="Override max_iteration.")
    r.add_argument("--zoom", type=float, default=None, help="Override zoom (log2).")
    r.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")

    v = sub.add_parser("verify", help="Compare escape steps against the mpmath reference on a small grid.")
    v.add_argument("--size", type=int, default=24, help="Width and height of the comparison grid.")
    v.add_argument("--processes", type=int, default=None, help="Reference renderer processes.")
    v.add_argument("--tolerance", type=float, default=0.02, help="Accepted mismatch ratio.")

    return p


def _renderer_info(cfg, request) -> dict:
    tier = resolve_tier(request.viewport.zoom, request.precision_tier, pipeline_settings_from_config(cfg).thresholds)
    return {
        "tier": tier.label,
        "backend": resolve_backend(cfg["pipeline"]["backend"], tier).value,
        "zoom": request.viewport.zoom,
        "cuda": probe_cuda(),
    }


def _render(cfg, args, logger) -> int:
    if args.max_iteration is not None:
        cfg["max_iteration"] = args.max_iteration
    if args.zoom is not None:
        cfg["zoom"] = args.zoom
    cfg = normalise_config(cfg)
    output = args.output or cfg["output"]

    request = request_from_config(cfg)
    settings = pipeline_settings_from_config(cfg)
    coordinator = PipelineCoordinator(settings)
    worker = RenderWorker(coordinator, debounce=settings.debounce).start()
    worker.submit(request)

    bar = tqdm(total=100, desc="render", unit="%", disable=args.no_progress)
    shown = 0
    try:
        while not worker.wait_idle(0.1):
            snap = coordinator.progress.snapshot
            pct = int(snap.fraction * 100)
            if pct > shown:
                bar.update(pct - shown)
                shown = pct
            bar.set_postfix_str(f"{snap.stage.value} escaped={snap.escaped_pixels}")
        bar.update(100 - shown)
    finally:
        bar.close()
        worker.stop(timeout=5.0)

    frame: Optional[Frame] = worker.latest_frame
    if frame is None:
        logger.error("No image produced: %s", worker.status)
        return 1

    Image.fromarray(frame.image_array).save(output, format="PNG", optimize=True)
    logger.info("Saved %s (tier=%s escaped=%s)", output, frame.tier.label, frame.escaped_pixels)

    manifest = build_manifest(
        settings=config_from_request(request, settings),
        renderer_info=_renderer_info(cfg, request),
        result={"image": output, "generation": frame.generation, "escaped_pixels": frame.escaped_pixels},
        commit=git_commit(),
    )
    path = manifest_path_for(output)
    write_manifest(path, manifest)
    logger.info("Run manifest written: %s", path)
    return 0


def _verify(cfg, args, log_queue, log_level, logger) -> int:
    cfg["width"] = cfg["height"] = args.size
    cfg = normalise_config(cfg)
    request = request_from_config(cfg)
    coordinator = PipelineCoordinator(pipeline_settings_from_config(cfg))

    with log_duration(logger, "perturbation render", logging.INFO):
        frame = coordinator.render(request)
    if frame is None:
        logger.error("Perturbation render failed: %s", coordinator.progress.snapshot.error)
        return 1
    perturbed = coordinator.state.step.copy()
    perturbed[perturbed >= request.max_iteration] = -1
    with log_duration(logger, "reference render", logging.INFO):
        reference = reference_escape_steps(request, processes=args.processes, log_queue=log_queue, log_level=log_level)

    mismatched = int(np.count_nonzero(perturbed != reference))
    ratio = mismatched / reference.size
    logger.info("Mismatch %s/%s ratio=%.4f tolerance=%.4f", mismatched, reference.size, ratio, args.tolerance)
    return 0 if ratio <= args.tolerance else 2


def main(argv: Optional[list] = None) -> int:
    args = build_arg_parser().parse_args(argv)

    log_level = parse_level(args.log_level)
    log_file = args.log_file if args.log_file and args.log_file.strip() else None
    listener_logger = configure_root_logging(level=log_level, console=True, log_file=log_file)

    queue = create_log_queue()
    listener = start_queue_listener(queue, listener_logger)

    logger = get_logger()

    try:
        cfg = load_config(args.config)
        if args.backend:
            cfg.setdefault("pipeline", {})
            cfg["pipeline"] = dict(cfg["pipeline"] or {}, backend=args.backend)

        if args.cmd == "render":
            return _render(cfg, args, logger)
        if args.cmd == "verify":
            return _verify(cfg, args, queue, log_level, logger)
        raise RuntimeError("Unknown command.")
    except PerturbZoomError as e:
        logger.error("%s", e)
        return 1
    finally:
        listener.stop()


if __name__ == "__main__":
    raise SystemExit(main())
