"""Tests for the command line entry point."""

import json

from PIL import Image

from perturbzoom.cli import build_arg_parser, main


def write_config(tmp_path, **overrides):
    cfg = {"width": 16, "height": 12, "max_iteration": 50, "pipeline": {"backend": "numpy", "debounce": 0.0}}
    cfg.update(overrides)
    path = tmp_path / "view.json"
    path.write_text(json.dumps(cfg), encoding="utf-8")
    return str(path)


class TestParser:
    def test_subcommands(self):
        args = build_arg_parser().parse_args(["--backend", "cpu", "render", "--zoom", "3.5"])
        assert args.cmd == "render"
        assert args.backend == "cpu"
        assert args.zoom == 3.5


class TestRender:
    def test_writes_png_and_manifest(self, tmp_path):
        output = tmp_path / "out.png"
        code = main(["--config", write_config(tmp_path), "--log-file", "",
                     "render", "--output", str(output), "--no-progress"])

        assert code == 0
        with Image.open(output) as image:
            assert image.size == (16, 12)
            assert image.mode == "RGBA"

        manifest = json.loads((tmp_path / "out.json").read_text(encoding="utf-8"))
        assert manifest["settings"]["width"] == 16
        assert manifest["renderer"]["tier"] == "raw-32"
        assert manifest["renderer"]["backend"] == "numpy"
        assert "numpy" in manifest["packages"]

    def test_exhausted_zoom_fails(self, tmp_path):
        config = write_config(tmp_path, pipeline={"backend": "numpy", "thresholds": {"probed_extended": 1000.0}})
        code = main(["--config", config, "--log-file", "", "render",
                     "--output", str(tmp_path / "never.png"), "--zoom", "5000", "--no-progress"])

        assert code == 1
        assert not (tmp_path / "never.png").exists()

    def test_invalid_config(self, tmp_path):
        code = main(["--config", write_config(tmp_path, width=0), "--log-file", "", "render", "--no-progress"])
        assert code == 1

    def test_non_numeric_pipeline_field(self, tmp_path):
        config = write_config(tmp_path, pipeline={"batch_iterations": "many"})
        code = main(["--config", config, "--log-file", "", "render", "--no-progress"])
        assert code == 1


class TestVerify:
    def test_agrees_with_reference(self, tmp_path):
        config = write_config(tmp_path, precision_tier="raw-64")
        code = main(["--config", config, "--log-file", "", "verify",
                     "--size", "6", "--processes", "1", "--tolerance", "0.1"])
        assert code == 0
