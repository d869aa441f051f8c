"""CLI entrypoint for the radar animation service."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

from radar_animation.app import RadarAnimationService
from radar_animation.errors import RadarRenderError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Render and cache the animated radar GIF shown on the dashboard.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config.json"),
        help="Path to the configuration file (default: config.json)",
    )
    parser.add_argument(
        "--once",
        type=Path,
        metavar="OUTPUT",
        help="Render a single GIF to OUTPUT and exit instead of running the scheduler.",
    )
    parser.add_argument("--width", type=int, help="Override the GIF width for --once.")
    parser.add_argument("--height", type=int, help="Override the GIF height for --once.")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Instantiate the service facade and either render once or start the scheduler."""
    args = build_parser().parse_args(argv)
    service = RadarAnimationService(str(args.config))

    if args.once is not None:
        try:
            service.render_to_file(args.once, args.width, args.height)
        except RadarRenderError as exc:
            service.logger.error("Radar GIF render failed: %s", exc.summary())
            return 1
        finally:
            service.coordinator.shutdown()
        return 0

    service.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
