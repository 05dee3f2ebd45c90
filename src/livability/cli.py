"""
Livability CLI entrypoint.

Intended for quick local checks without a map frontend:
- `score`: explain the score at one location
- `tiles`: show the tile plan for a viewport
- `prefetch`: run the progressive prefetch for a viewport (in-process or over HTTP)
- `cache-status`: shared store and L1 statistics
"""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any

from livability.config.settings import Settings, apply_profile, get_settings
from livability.core.logging import configure_logging
from livability.core.tiles import plan_viewport
from livability.domain.models import Bounds, BreakdownRequest, Factor
from livability.heatmap.batch import build_service
from livability.prefetch.client import HttpBatchClient, LocalBatchClient
from livability.prefetch.orchestrator import PrefetchOrchestrator, ViewportRequest
from livability.scoring.explain import describe_factor, one_line_summary


def _factors(settings: Settings, profile: str | None) -> list[Factor]:
    if not profile:
        return list(settings.factors)
    if profile not in settings.profiles:
        raise ValueError(f"Unknown profile '{profile}' (known: {', '.join(sorted(settings.profiles))})")
    return apply_profile(settings.factors, settings.profiles[profile])


def _bounds(args: argparse.Namespace) -> Bounds:
    return Bounds(north=args.north, south=args.south, east=args.east, west=args.west)


def _add_scoring_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--profile", type=str, default=None, help="Profile name from config (see /api/factors)")
    p.add_argument("--curve", choices=["linear", "log", "exp", "power"], default=None)
    p.add_argument("--sensitivity", type=float, default=None)
    p.add_argument("--lambda", dest="lam", type=float, default=None, help="Aggregation lambda (-5..5)")
    p.add_argument("--source", choices=["primary", "fallback"], default="primary")


def _add_bounds_args(p: argparse.ArgumentParser) -> None:
    for name in ("north", "south", "east", "west"):
        p.add_argument(f"--{name}", required=True, type=float)


def _cmd_score(args: argparse.Namespace) -> int:
    """Handle the `score` subcommand."""
    settings = get_settings()
    request = BreakdownRequest(
        lat=args.lat,
        lng=args.lng,
        factors=_factors(settings, args.profile),
        distance_curve=args.curve or settings.scoring.default_curve,
        sensitivity=args.sensitivity if args.sensitivity is not None else settings.scoring.default_sensitivity,
        aggregation_lambda=args.lam if args.lam is not None else settings.scoring.default_lambda,
        data_source=args.source,
    )
    result = build_service(settings).breakdown(request)
    if args.json:
        print(json.dumps(result.model_dump(mode="json"), ensure_ascii=False, indent=2))
        return 0
    print(f"{result.lat:.5f},{result.lng:.5f}  {one_line_summary(result)}  (source={result.data_source})")
    for row in result.breakdown:
        print(f"  - {describe_factor(row)}")
    return 0


def _cmd_tiles(args: argparse.Namespace) -> int:
    settings = get_settings()
    tiles_cfg = settings.tiles
    plan = plan_viewport(
        _bounds(args),
        zoom=args.zoom or tiles_cfg.zoom,
        radius=args.radius,
        max_viewport_tiles=tiles_cfg.max_viewport_tiles,
        max_total_tiles=tiles_cfg.max_total_tiles,
    )
    print(
        json.dumps(
            {
                "too_large": plan.too_large,
                "radius": plan.radius,
                "viewport_tiles": [t.key for t in plan.viewport_tiles],
                "tiles": [t.key for t in plan.tiles],
            },
            indent=2,
        )
    )
    return 0


async def _prefetch(args: argparse.Namespace, settings: Settings) -> int:
    if args.local:
        client: Any = LocalBatchClient(build_service(settings), timeout_seconds=settings.prefetch.fetch_timeout_seconds)
    else:
        client = HttpBatchClient(
            args.url or settings.prefetch.batch_url,
            timeout_seconds=settings.prefetch.fetch_timeout_seconds,
            binary=settings.prefetch.binary,
        )

    def on_update(state) -> None:
        if args.verbose:
            print(f"  [{state.status}] phase={state.phase} points={state.point_count} tiles={len(state.covered_tiles)}")

    orchestrator = PrefetchOrchestrator(
        client, tiles=settings.tiles, prefetch=settings.prefetch, on_update=on_update
    )
    request = ViewportRequest(
        bounds=_bounds(args),
        factors=_factors(settings, args.profile),
        distance_curve=args.curve or settings.scoring.default_curve,
        sensitivity=args.sensitivity if args.sensitivity is not None else settings.scoring.default_sensitivity,
        aggregation_lambda=args.lam if args.lam is not None else settings.scoring.default_lambda,
        normalize_to_viewport=args.normalize,
        data_source=args.source,
        tile_radius=args.radius,
        mode=args.mode or settings.prefetch.mode,
    )
    try:
        outcome = await orchestrator.fetch(request)
    finally:
        if isinstance(client, HttpBatchClient):
            await client.aclose()

    state = orchestrator.snapshot()
    print(
        f"{outcome.status}: phases={outcome.phases_completed} requests={outcome.requests_sent} "
        f"points={len(orchestrator.points())} fallback={state.used_fallback}"
    )
    if outcome.error:
        print(f"  error: {outcome.error}")
    return 0 if outcome.status in {"done", "idle"} else 1


def _cmd_prefetch(args: argparse.Namespace) -> int:
    return asyncio.run(_prefetch(args, get_settings()))


def _cmd_cache_status(_: argparse.Namespace) -> int:
    print(json.dumps(build_service(get_settings()).cache_status(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the livability CLI."""
    parser = argparse.ArgumentParser(prog="livability")
    sub = parser.add_subparsers(dest="command", required=True)

    sc = sub.add_parser("score", help="Explain the livability score at one location.")
    sc.add_argument("--lat", required=True, type=float)
    sc.add_argument("--lng", required=True, type=float)
    _add_scoring_args(sc)
    sc.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    sc.set_defaults(func=_cmd_score)

    tl = sub.add_parser("tiles", help="Show the tile plan for a viewport.")
    _add_bounds_args(tl)
    tl.add_argument("--zoom", type=int, default=None)
    tl.add_argument("--radius", type=int, default=0)
    tl.set_defaults(func=_cmd_tiles)

    pf = sub.add_parser("prefetch", help="Progressively load a viewport's heatmap tiles.")
    _add_bounds_args(pf)
    _add_scoring_args(pf)
    pf.add_argument("--radius", type=int, default=0)
    pf.add_argument("--mode", choices=["progressive", "batch"], default=None)
    pf.add_argument("--normalize", action="store_true", help="Rescale each batch to [0, 1]")
    pf.add_argument("--local", action="store_true", help="Score in-process instead of calling the API")
    pf.add_argument("--url", type=str, default=None, help="Batch endpoint (default from config)")
    pf.add_argument("--verbose", action="store_true")
    pf.set_defaults(func=_cmd_prefetch)

    cs = sub.add_parser("cache-status", help="Shared store and L1 cache statistics.")
    cs.set_defaults(func=_cmd_cache_status)

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint callable used by `python -m livability.cli`."""
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    func: Any = getattr(args, "func")
    return int(func(args))


if __name__ == "__main__":
    raise SystemExit(main())
