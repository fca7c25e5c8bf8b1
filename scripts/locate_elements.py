#!/usr/bin/env python3
"""Batch runner for boundscout element localization.

Common case needs no flags:
- Scans PNG/JPG screenshots under `assets/screenshots/`.
- Writes per-image outputs under `outputs/locate/<image_stem>/`.
- Produces `outputs/locate/summary.yaml`: recap of elements per image.

Tuning is via environment variables:
- `VLM_MODEL` (default: "openai/gpt-4o"; must include provider prefix for LiteLLM)
- `VLM_API` ("chat" or "responses", default: "chat")
- `VLM_MAX_TOKENS` (default: 2000)
- `MAX_DEPTH` (default: 2), `MAX_API_CALLS` (default: 10)
- `COVERAGE_THRESHOLD` (default: 0.30)
- `ALIGN` (default: 0): run the alignment/nudge loop after refinement.
- `MAX_ATTEMPTS` (default: 3), `NUDGE_STEP` (default: 20)
"""

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any

import yaml

from boundscout.pipelines.analyze import AnalysisConfig, run_analysis

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg")

# env var -> (AnalysisConfig field, parser, default)
_NUMERIC_ENV: dict[str, tuple[str, type[int] | type[float], str]] = {
    "VLM_MAX_TOKENS": ("vlm_max_tokens", int, "2000"),
    "MAX_DEPTH": ("max_depth", int, "2"),
    "MAX_API_CALLS": ("max_api_calls", int, "10"),
    "COVERAGE_THRESHOLD": ("coverage_threshold", float, "0.30"),
    "MAX_ATTEMPTS": ("max_attempts", int, "3"),
    "NUDGE_STEP": ("nudge_step", float, "20"),
}


def _parse_flag(name: str, raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise SystemExit(f"{name} must be a boolean (0/1/true/false), got {raw!r}")


def _parse_number(name: str, raw: str, kind: type[int] | type[float]) -> int | float:
    try:
        value = kind(raw)
    except ValueError:
        raise SystemExit(f"{name} must be a {kind.__name__}, got {raw!r}") from None
    if value < 0:
        raise SystemExit(f"{name} must be >= 0, got {raw!r}")
    return value


def _settings_from_env() -> dict[str, Any]:
    """Collect `AnalysisConfig` overrides from the environment."""
    model = os.environ.get("VLM_MODEL", "openai/gpt-4o")
    if "/" not in model:
        raise SystemExit(
            f"VLM_MODEL={model!r} has no provider prefix; LiteLLM needs one.\n"
            "For example:\n"
            "  export VLM_MODEL='openai/gpt-4o'\n"
            "  export OPENAI_API_KEY='...'\n"
        )
    api = os.environ.get("VLM_API", "chat").strip().lower()
    if api not in ("chat", "responses"):
        raise SystemExit(f"VLM_API must be 'chat' or 'responses', got {api!r}")

    settings: dict[str, Any] = {
        "vlm_model": model,
        "vlm_api": api,
        "align": _parse_flag("ALIGN", os.environ.get("ALIGN", "0")),
    }
    for env_name, (field_name, kind, default) in _NUMERIC_ENV.items():
        settings[field_name] = _parse_number(env_name, os.environ.get(env_name, default), kind)
    return settings


def _summary_entry(image_path: Path, outdir: Path, final: dict[str, Any]) -> dict[str, Any]:
    return {
        "image": str(image_path),
        "outdir": str(outdir),
        "size": [final.get("image_w"), final.get("image_h")],
        "summary": final.get("summary", {}),
        "elements": [
            {
                "reference_name": el.get("reference_name"),
                "status": el.get("status"),
                "confidence": el.get("confidence"),
                "bounding_box": el.get("bounding_box"),
            }
            for el in final.get("elements") or []
        ],
    }


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(description="Locate UI elements in a folder of screenshots.")
    parser.add_argument("--images_dir", type=Path, default=Path("assets/screenshots"))
    parser.add_argument("--out_root", type=Path, default=Path("outputs/locate"))
    parser.add_argument("--overwrite", action="store_true", help="Re-run images that have a final.json.")
    parser.add_argument("--save_debug", action="store_true", help="Write crops and overlays per image.")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    images_dir = args.images_dir.expanduser().resolve()
    if not images_dir.is_dir():
        raise SystemExit(f"Screenshot folder not found: {images_dir}")
    screenshots = sorted(
        p for p in images_dir.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES
    )
    if not screenshots:
        raise SystemExit(f"No screenshots ({', '.join(IMAGE_SUFFIXES)}) in {images_dir}")

    out_root = args.out_root.expanduser().resolve()
    out_root.mkdir(parents=True, exist_ok=True)
    settings = _settings_from_env()

    entries: list[dict[str, Any]] = []
    failed: list[str] = []
    for image_path in screenshots:
        outdir = out_root / image_path.stem
        final_path = outdir / "final.json"
        try:
            if args.overwrite or not final_path.exists():
                print(f"Locating elements in {image_path.name}")
                cfg = AnalysisConfig(
                    image_path=image_path,
                    outdir=outdir,
                    save_debug=outdir / "debug" if args.save_debug else None,
                    verbose=args.verbose,
                    **settings,
                )
                result = run_analysis(cfg)
                if result.error:
                    print(f"[WARN] {image_path.name}: {result.error}", file=sys.stderr)
            else:
                print(f"Skipping {image_path.name} (final.json exists)")
            final = json.loads(final_path.read_text(encoding="utf-8"))
            entries.append(_summary_entry(image_path, outdir, final))
        except Exception as e:
            failed.append(image_path.name)
            print(f"[ERROR] {image_path.name}: {type(e).__name__}: {e}", file=sys.stderr)

    summary_path = out_root / "summary.yaml"
    summary_path.write_text(
        yaml.safe_dump({"images": entries, "failed": failed}, sort_keys=False),
        encoding="utf-8",
    )
    print(f"Wrote {summary_path}")

    if failed:
        print(f"{len(failed)} of {len(screenshots)} screenshots failed.", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
