#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenant_sync.runtime import create_runtime_from_env
from tenant_sync.vault import STORE_ROLES


def main() -> int:
    parser = argparse.ArgumentParser(description="Store an encrypted store credential for a tenant.")
    parser.add_argument("--tenant", required=True, help="Tenant id (use 'system' for the shared fallback row).")
    parser.add_argument("--role", required=True, choices=STORE_ROLES)
    parser.add_argument("--url", required=True, help="Store base URL")
    parser.add_argument(
        "--secret-env",
        default="SYNC_TENANT_SECRET_KEY",
        help="environment variable holding the secret key (kept off the command line)",
    )
    args = parser.parse_args()

    secret_key = os.getenv(args.secret_env, "").strip()
    if not secret_key:
        raise SystemExit(f"{args.secret_env} must hold the secret key")

    runtime = create_runtime_from_env()
    record = runtime.vault.configure(tenant_id=args.tenant, role=args.role, url=args.url, secret_key=secret_key)
    print(
        json.dumps(
            {"tenant_id": record.tenant_id, "role": record.store_role, "url": record.url, "privilege": record.privilege},
            ensure_ascii=True,
            sort_keys=True,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
