#!/usr/bin/env python3
"""Delete a tenant's scope, forcing finalization if it gets stuck.

Usage:
    # Report the scope's phase and finalizers without touching it:
    python scripts/purge_scope.py --identity alice --dry-run

    # Delete the scope and every secret in it:
    python scripts/purge_scope.py --identity alice

Environment Variables:
    SCOPE_BACKEND: kubernetes (default) or memory
    KUBE_API_URL, KUBE_TOKEN: cluster endpoint and credentials when running
        outside the cluster
    SCOPE_DELETE_TIMEOUT_SECONDS, SCOPE_FINALIZE_TIMEOUT_SECONDS: wait windows
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def purge_scope(identity: str, dry_run: bool = False) -> dict:
    """Delete the identity's scope through the lifecycle controller.

    Returns:
        dict with scope, status ('removed', 'absent' or 'dry_run') and the
        finalizers that had to be cleared
    """
    # Import here to avoid loading config before env vars are set
    from scopevault.service.auth import scope_for
    from scopevault.service.errors import translate_backend_errors
    from scopevault.service.runtime import get_runtime
    from scopevault.storage.errors import ResourceNotFound

    runtime = get_runtime()
    try:
        scope_name = scope_for(identity, runtime.settings.scope_prefix)
        with translate_backend_errors("purge scope"):
            try:
                scope = await runtime.backend.get_scope(scope_name)
            except ResourceNotFound:
                print(f"Scope {scope_name} does not exist")
                return {"scope": scope_name, "status": "absent", "cleared_finalizers": []}

            if dry_run:
                finalizers = ", ".join(scope.finalizers) or "none"
                print(
                    f"[DRY RUN] Would delete scope {scope_name} "
                    f"(phase: {scope.phase.value}, finalizers: {finalizers})"
                )
                return {
                    "scope": scope_name,
                    "status": "dry_run",
                    "phase": scope.phase.value,
                    "finalizers": list(scope.finalizers),
                }

            transition = await runtime.lifecycle.delete_scope_and_await_removed(scope_name)
        if transition.forced_finalization:
            print(
                f"Removed scope {scope_name} after clearing finalizers: "
                f"{', '.join(transition.cleared_finalizers) or 'none'}"
            )
        else:
            print(f"Removed scope {scope_name}")
        return {
            "scope": scope_name,
            "status": "removed",
            "cleared_finalizers": transition.cleared_finalizers,
        }
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Delete a tenant scope, forcing finalization if it gets stuck",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--identity", required=True, help="Identity whose scope to delete")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report the scope's phase and finalizers without deleting it",
    )
    args = parser.parse_args()

    # Import after argparse so --help works without the package's deps
    from scopevault.service.errors import ServiceError

    try:
        result = asyncio.run(purge_scope(args.identity, dry_run=args.dry_run))
    except ServiceError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        sys.exit(1)
    print(f"Result: {result}")


if __name__ == "__main__":
    main()
