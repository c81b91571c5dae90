#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenant_sync.runtime import create_runtime_from_env
from tenant_sync.vault import CLIENT


def main() -> int:
    parser = argparse.ArgumentParser(description="Move failed provisioning events back to pending.")
    parser.add_argument("--tenant", required=True, help="Tenant whose integration queue is requeued.")
    parser.add_argument(
        "--event-ids",
        default="",
        help="comma-separated event ids; default requeues every failed event",
    )
    args = parser.parse_args()

    runtime = create_runtime_from_env()
    record = runtime.vault.resolve_strict(args.tenant, CLIENT)
    if record is None:
        raise SystemExit(f"tenant {args.tenant} has no client store configured")

    event_ids = [x.strip() for x in args.event_ids.split(",") if x.strip()] or None
    count = runtime.event_processor.requeue_failed(args.tenant, runtime.vault.handle_for(record), event_ids)
    print(json.dumps({"tenant_id": args.tenant, "requeued": count}, ensure_ascii=True, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
