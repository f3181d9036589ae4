"""High-level API + CLI for the hybrid visual stamp detector."""

from __future__ import annotations

import argparse
import json
import logging
import mimetypes
from dataclasses import replace
from pathlib import Path
from typing import Any

from stamp_detector import StampConfig, StampDetector, load_config, load_references


class StampDetectorAPI:
    """High-level orchestration API usable from CLI or notebooks."""

    def __init__(self, config_path: str | Path | None = None, stamps_dir: str | Path | None = None):
        self.config: StampConfig = load_config(config_path)
        self.stamps_dir = Path(stamps_dir) if stamps_dir else Path(self.config.stamps_dir)
        self.store = None
        self.detector = None

    def _ensure_runtime(self) -> None:
        if self.detector is not None:
            return
        self.store = load_references(self.stamps_dir, self.config)
        self.detector = StampDetector(self.config, self.store)

    def set_budget(self, budget_ms: float) -> None:
        self.config = replace(self.config, time_budget_ms=float(budget_ms))
        if self.detector is not None:
            self.detector = StampDetector(self.config, self.store)

    def detect_file(self, path: str | Path, mime_type: str | None = None) -> dict[str, Any]:
        self._ensure_runtime()
        p = Path(path)
        mime = mime_type or mimetypes.guess_type(p.name)[0]
        result = self.detector.detect(p.read_bytes(), mime)
        out = result.to_dict()
        out["file"] = str(p)
        return out

    def list_stamps(self) -> list[dict[str, Any]]:
        self._ensure_runtime()
        return [
            {
                "name": s.name,
                "width": int(s.base_image.shape[1]),
                "height": int(s.base_image.shape[0]),
                "variants": len(s.variants),
            }
            for s in self.store
        ]


# -------------------- CLI commands --------------------

def cmd_detect(args: argparse.Namespace) -> None:
    api = StampDetectorAPI(args.config, args.stamps)
    if args.budget_ms is not None:
        api.set_budget(args.budget_ms)
    out = api.detect_file(args.file, args.mime)
    print(json.dumps(out, indent=2, ensure_ascii=False))


def cmd_stamps(args: argparse.Namespace) -> None:
    api = StampDetectorAPI(args.config, args.stamps)
    stamps = api.list_stamps()
    print(f"[stamps] {len(stamps)} stamp(s) loaded from {api.stamps_dir}")
    print(json.dumps(stamps, indent=2, ensure_ascii=False))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Hybrid visual stamp detector")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    detect_p = sub.add_parser("detect", help="Detect a reference stamp in a PDF, DOCX or image")
    detect_p.add_argument("file", help="Document to inspect")
    detect_p.add_argument("--mime", default=None, help="Declared media type (guessed from the name if omitted)")
    detect_p.add_argument("--stamps", default=None, help="Reference stamps directory")
    detect_p.add_argument("--config", default=None, help="YAML config (default: configs/stamp_detector.yaml)")
    detect_p.add_argument("--budget-ms", type=float, default=None, help="Override the time budget")

    stamps_p = sub.add_parser("stamps", help="List loaded reference stamps and their variants")
    stamps_p.add_argument("--stamps", default=None, help="Reference stamps directory")
    stamps_p.add_argument("--config", default=None, help="YAML config")

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "detect": cmd_detect,
        "stamps": cmd_stamps,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
