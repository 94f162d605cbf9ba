import argparse
import asyncio
import json
import logging

import uvicorn

from algorithms import WeightConverter
from config import load_settings
from db import OfflineSessionRepository
from errors import FitFlowError
from rest_api import FitFlowAPI
from remote_store import RestRemoteStore
from settings_schema import SettingsSchema
from stats_service import StatisticsService
from sync_service import SyncReconciler


def _remote(settings: SettingsSchema) -> RestRemoteStore:
    return RestRemoteStore(
        settings.remote_url,
        api_key=settings.remote_api_key,
        access_token=settings.access_token,
        timeout=settings.request_timeout,
    )


async def sync_pending(settings: SettingsSchema) -> dict:
    remote = _remote(settings)
    try:
        reconciler = SyncReconciler(remote, OfflineSessionRepository(settings.db_path))
        report = await reconciler.sync_unsynced_sessions()
    finally:
        await remote.aclose()
    return {"synced": report.synced, "failed": report.failed}


async def list_pending(settings: SettingsSchema) -> list[dict]:
    sessions = await OfflineSessionRepository(settings.db_path).get_unsynced()
    return [s.model_dump() for s in sessions]


async def run_statistics(settings: SettingsSchema, cmd: str, args) -> list | dict:
    remote = _remote(settings)
    stats = StatisticsService(remote)
    try:
        user = await remote.get_user()
        if cmd == "rebuild-analytics":
            return {"processed": await stats.rebuild_analytics(user.id)}
        history = await stats.fetch_history(user.id)
    finally:
        await remote.aclose()
    if cmd == "records":
        rows = stats.personal_records(history)
    elif cmd == "top":
        rows = stats.top_exercises_by_volume(history, args.limit)
    else:
        rows = stats.exercise_progress(history, args.exercise, args.timeframe)
    return [r.model_dump() for r in rows]


def main() -> None:
    parser = argparse.ArgumentParser(description="FitFlow utility commands")
    parser.add_argument("--yaml", default="settings.yaml")
    sub = parser.add_subparsers(dest="cmd", required=True)

    conv = sub.add_parser("convert")
    conv.add_argument("--weight", type=float, required=True)
    conv.add_argument("--unit", choices=["kg", "lb"], required=True)

    sub.add_parser("sync")
    sub.add_parser("pending")
    sub.add_parser("records")

    top = sub.add_parser("top")
    top.add_argument("--limit", type=int, default=10)

    vol = sub.add_parser("volume")
    vol.add_argument("--exercise", required=True)
    vol.add_argument(
        "--timeframe",
        choices=["week", "month", "3months", "year", "all"],
        default="month",
    )

    sub.add_parser("rebuild-analytics")

    serve = sub.add_parser("serve")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    args = parser.parse_args()

    if args.cmd == "convert":
        if args.unit == "kg":
            print(f"{args.weight} kg = {WeightConverter.kg_to_lb(args.weight)} lb")
        else:
            print(f"{args.weight} lb = {WeightConverter.lb_to_kg(args.weight)} kg")
        return

    settings = load_settings(args.yaml)
    logging.basicConfig(level=settings.log_level)

    if args.cmd == "serve":
        api = FitFlowAPI(yaml_path=args.yaml, start_background=True)
        uvicorn.run(api.app, host=args.host, port=args.port)
        return

    try:
        if args.cmd == "sync":
            result = asyncio.run(sync_pending(settings))
        elif args.cmd == "pending":
            result = asyncio.run(list_pending(settings))
        else:
            result = asyncio.run(run_statistics(settings, args.cmd, args))
    except FitFlowError as exc:
        parser.exit(1, f"error: {exc}\n")
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
