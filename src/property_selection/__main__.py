import argparse
import asyncio
import json
import logging
from pathlib import Path

from .config import DataSourceRegistry, PipelineConfig, make_translator, messages_for
from .models import MapPoint, SelectionRow
from .pipeline import SelectionPipeline


def _load_json(path):
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _build_parser():
    parser = argparse.ArgumentParser(
        description="Select the parcels and owners at a map point",
    )
    parser.add_argument("--x", type=float, required=True, help="Map point x")
    parser.add_argument("--y", type=float, required=True, help="Map point y")
    parser.add_argument("--wkid", type=int, default=None, help="Spatial reference of the point")
    parser.add_argument(
        "--config",
        default=None,
        help="JSON widget config; may carry a dataSources id->url map",
    )
    parser.add_argument(
        "--selection",
        default=None,
        help="JSON file with the current selection rows",
    )
    parser.add_argument(
        "--output",
        default=None,
        help="Write the updated selection rows to this JSON file",
    )
    parser.add_argument("--locale", default="en", help="Message locale (en, sv)")
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full result as JSON",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Emit one JSON log line per pipeline stage",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (DEBUG, INFO, etc.)",
    )
    return parser


def main(argv=None):
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=(args.log_level or "WARNING").upper())

    raw_config = _load_json(args.config) if args.config else {}
    if raw_config:
        config = PipelineConfig.from_dict(raw_config)
    else:
        config = PipelineConfig.from_env()
    if raw_config.get("dataSources"):
        registry = DataSourceRegistry.from_mapping(raw_config["dataSources"])
    else:
        registry = DataSourceRegistry.from_env()

    existing = []
    if args.selection:
        existing = [SelectionRow.from_dict(row) for row in _load_json(args.selection)]

    pipeline = SelectionPipeline(registry, make_translator(messages_for(args.locale)))

    async def _run():
        try:
            return await pipeline.run(MapPoint(args.x, args.y, args.wkid), config, existing)
        finally:
            await pipeline.close()

    result = asyncio.run(_run())

    raw_owner = not config.enable_pii_masking
    if args.output and result.is_success:
        Path(args.output).write_text(
            json.dumps([row.to_dict(raw_owner) for row in result.updated_rows]),
            encoding="utf-8",
        )

    if args.json:
        print(json.dumps(result.to_dict(include_raw_owner=raw_owner)))
    else:
        print(f"Status: {result.status}")
        if result.message:
            print(f"Error: {result.message} ({result.failure_reason})")
        for i, row in enumerate(result.updated_rows):
            print(f"{i+1}. {row.label}: {row.owner_text}")
    if args.log_json:
        for entry in result.log_entries:
            print(json.dumps(entry))
    summary = {
        "status": result.status,
        "request_id": result.request_id,
        "rows_to_process": len(result.rows_to_process),
        "selected": len(result.updated_rows),
        "removed": sorted(result.to_remove),
    }
    print(json.dumps(summary))
    return 0 if result.status != "error" else 1


def _safe_main():
    try:
        code = main()
    except SystemExit:
        raise
    except Exception as exc:
        print(json.dumps({"error": str(exc)}))
        raise SystemExit(1)
    raise SystemExit(code)


if __name__ == "__main__":
    _safe_main()
