"""Operator CLI for stuck or failed scenes.

Run with:
    python3 scripts/scene_admin.py recover <scene_id> --url <output_url> [--job-id ID]
    python3 scripts/scene_admin.py check-job <scene_id> [--stage VIDEO_GENERATION] [--wait 600]
    python3 scripts/scene_admin.py reset <scene_id> [--to IMAGE_GENERATION]
    python3 scripts/scene_admin.py fail <scene_id> --reason "..."

Talks to the database, the artifact store and the providers directly, using
the same settings (.env) as the API and workers.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from app.database import close_db
from app.services.errors import PipelineError
from app.services.recovery import SceneAdmin

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    sub = parser.add_subparsers(dest="command", required=True)

    recover = sub.add_parser("recover", help="store a provider result and advance the scene")
    recover.add_argument("scene_id")
    recover.add_argument("--url", required=True, help="provider output URL")
    recover.add_argument("--job-id", help="provider job id, for the log")
    recover.add_argument("--provider", help="provider name, for the log")
    recover.add_argument("--stage", help="stage the result belongs to (defaults to the stuck one)")

    check = sub.add_parser("check-job", help="ask the provider about the last logged job")
    check.add_argument("scene_id")
    check.add_argument("--stage")
    check.add_argument("--wait", type=float, default=0, help="keep polling the job for up to this many seconds")

    reset = sub.add_parser("reset", help="move a FAILED scene back to a stage and re-run it")
    reset.add_argument("scene_id")
    reset.add_argument("--to", dest="to_status")

    fail = sub.add_parser("fail", help="mark a scene FAILED")
    fail.add_argument("scene_id")
    fail.add_argument("--reason", required=True)
    return parser


async def run(args: argparse.Namespace) -> str:
    admin = SceneAdmin()
    try:
        if args.command == "recover":
            result = await admin.recover(
                args.scene_id, args.url,
                job_id=args.job_id, provider=args.provider, stage=args.stage,
            )
            return f"{result.scene_id}: {result.status} ({result.message})"
        if args.command == "check-job":
            result = await admin.check_job(args.scene_id, stage=args.stage, wait_seconds=args.wait)
            return f"{result.scene_id}: {result.status}, job {result.job_id} {result.job_state} ({result.message})"
        if args.command == "reset":
            scene = await admin.reset(args.scene_id, args.to_status)
            return f"{scene.id}: {scene.status}"
        scene = await admin.force_fail(args.scene_id, args.reason)
        return f"{scene.id}: {scene.status} ({scene.failure_reason})"
    finally:
        await close_db()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        print(asyncio.run(run(args)))
    except PipelineError as e:
        print(f"{e.code}: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
