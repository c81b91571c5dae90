#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenant_sync.runtime import create_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the cross-store sync poller.")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit.")
    parser.add_argument("--tenant", default="", help="Run the per-tenant sync for one tenant and exit.")
    parser.add_argument("--resync-all", action="store_true", help="Re-match the latest terminal master checks.")
    parser.add_argument("--limit", type=int, default=0, help="Check limit for --resync-all (0 uses SYNC_RESYNC_LIMIT).")
    parser.add_argument("--sync-master-to-client", default="", metavar="TENANT", help="Copy master checks to a tenant.")
    args = parser.parse_args()

    logging.basicConfig(
        level=os.getenv("SYNC_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    runtime = create_runtime_from_env()

    if args.resync_all:
        result = runtime.reconciler.resync_all(limit=args.limit or None)
        print(json.dumps({"success": result.success, "result": result.as_dict()}, ensure_ascii=True))
        return 0 if result.success else 1
    if args.sync_master_to_client:
        summary = runtime.reconciler.sync_master_to_client(args.sync_master_to_client)
        print(json.dumps(summary, ensure_ascii=True, sort_keys=True))
        return 0 if summary["success"] else 1
    if args.tenant:
        outcome = runtime.scheduler.manual_trigger(args.tenant)
        print(json.dumps({"success": outcome is not None, "outcome": outcome}, ensure_ascii=True, default=str))
        return 0
    if args.once:
        stats = runtime.scheduler.run_tick()
        print(json.dumps({"success": True, "stats": stats, "state": runtime.reconciler.state()}, ensure_ascii=True))
        return 0

    runtime.scheduler.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        runtime.scheduler.close()
    print(json.dumps({"success": True, "state": runtime.reconciler.state()}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
