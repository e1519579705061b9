#!/usr/bin/env python3
"""
Re-encrypt stored cluster kubeconfigs with the current AES-GCM format.

Rows written before encryption existed hold plaintext YAML, older rows hold
the legacy ``iv:cipher`` AES-CBC format. Both are still readable by the
orchestrator; this script rewrites them as ``iv:authTag:cipher`` so that
ALLOW_PLAINTEXT_KUBECONFIG can be turned off.

Usage:
    python encrypt_cluster_credentials.py [--dry-run]

Or inside Docker container:
    docker exec devpocket-orchestrator python /app/encrypt_cluster_credentials.py --dry-run
"""
import asyncio
import sys
from collections import Counter
from typing import Optional

from devpocket.config import get_settings
from devpocket.errors import DevPocketError
from devpocket.services.connection import ClusterConnectionManager
from devpocket.services.datastore import Datastore
from devpocket.services.encryption import EncryptionService


def _is_current_format(payload: str) -> bool:
    return payload.count(":") == 2


async def migrate_credentials(
    datastore: Datastore,
    encryption_service: EncryptionService,
    connection_manager: Optional[ClusterConnectionManager] = None,
    dry_run: bool = False,
) -> Counter:
    """
    Rewrite every readable non-AES-GCM kubeconfig column.

    Returns:
        Counter with keys current, legacy, plaintext, unreadable
    """
    manager = connection_manager or ClusterConnectionManager(datastore, encryption_service)
    summary: Counter = Counter()

    for cluster in await datastore.list_clusters():
        decrypted = manager.try_decrypt(cluster.kubeconfig)
        if decrypted.ok and _is_current_format(cluster.kubeconfig):
            summary["current"] += 1
            continue

        if decrypted.ok:
            kind, content = "legacy", decrypted.content
        else:
            plaintext = manager.try_plaintext(cluster.kubeconfig)
            if not plaintext.ok:
                summary["unreadable"] += 1
                print(f"❌ {cluster.name} ({cluster.id}): kubeconfig is neither decryptable nor valid plaintext")
                continue
            kind, content = "plaintext", plaintext.content

        summary[kind] += 1
        if dry_run:
            print(f"ℹ️  {cluster.name} ({cluster.id}): {kind} kubeconfig would be re-encrypted")
            continue

        await datastore.update_cluster_kubeconfig(cluster.id, encryption_service.encrypt(content))
        manager.invalidate(cluster.id)
        print(f"✅ {cluster.name} ({cluster.id}): {kind} kubeconfig re-encrypted")

    return summary


async def run(dry_run: bool) -> int:
    from devpocket.database import AsyncSessionLocal, engine

    print("=" * 60)
    print("Encrypt Cluster Credentials - DevPocket")
    print("=" * 60)
    print()

    settings = get_settings()
    try:
        encryption_service = EncryptionService.from_settings(settings)
        encryption_service.validate_key()
        summary = await migrate_credentials(
            Datastore(AsyncSessionLocal),
            encryption_service,
            dry_run=dry_run,
        )
    except DevPocketError as e:
        print(f"❌ Error: {e}")
        return 1
    finally:
        await engine.dispose()

    print()
    print("Summary:")
    print(f"  Already current: {summary['current']}")
    print(f"  Legacy AES-CBC:  {summary['legacy']}")
    print(f"  Plaintext:       {summary['plaintext']}")
    print(f"  Unreadable:      {summary['unreadable']}")
    if dry_run:
        print()
        print("Dry run, nothing was written.")
    return 1 if summary["unreadable"] else 0


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Re-encrypt cluster kubeconfigs with AES-GCM")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report which clusters would be rewritten",
    )
    args = parser.parse_args()

    sys.exit(asyncio.run(run(args.dry_run)))


if __name__ == "__main__":
    main()
