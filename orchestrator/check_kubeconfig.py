#!/usr/bin/env python3
"""
Inspect a kubeconfig file the way cluster registration does.

Usage:
    python check_kubeconfig.py ~/.kube/config
    python check_kubeconfig.py ~/.kube/config --validate
    python check_kubeconfig.py ~/.kube/config --export-context my-context > my-context.yaml
"""
import asyncio
import sys

from pydantic import ValidationError

from devpocket.config import get_settings
from devpocket.errors import FormatError
from devpocket.services.kubeconfig import KubeconfigParser


def list_contexts(parser: KubeconfigParser, path: str) -> int:
    contexts = parser.parse_file(path)
    if not contexts:
        print("No usable contexts found in kubeconfig.")
        return 1

    print(f"\nFound {len(contexts)} context(s):\n")
    for context in contexts:
        marker = "*" if context.is_current_context else " "
        print(f" {marker} {context.name}")
        print(f"     Provider:  {context.provider}")
        print(f"     Region:    {context.region}")
        print(f"     Server:    {context.server}")
        print(f"     Namespace: {context.namespace}")
    print()
    return 0


async def validate(parser: KubeconfigParser, path: str) -> int:
    with open(path, encoding="utf-8") as f:
        report = await parser.validate_connectivity(f.read())

    for result in report.contexts:
        if result.connected:
            print(f"✅ {result.name}: {result.node_count} node(s), {result.namespace_count} namespace(s)")
        else:
            print(f"❌ {result.name}: {result.error}")

    print()
    print("All contexts reachable." if report.valid else "Some contexts are not reachable.")
    return 0 if report.valid else 1


def export_context(parser: KubeconfigParser, path: str, context_name: str) -> int:
    with open(path, encoding="utf-8") as f:
        print(parser.create_context_kubeconfig(f.read(), context_name), end="")
    return 0


def main():
    """Main entry point."""
    import argparse

    cli = argparse.ArgumentParser(description="Parse and check a kubeconfig file")
    cli.add_argument("path", help="Path to the kubeconfig file")
    cli.add_argument(
        "--validate",
        action="store_true",
        help="Connect to every context and report reachability",
    )
    cli.add_argument(
        "--export-context",
        metavar="NAME",
        help="Print a minimal kubeconfig holding only this context",
    )
    args = cli.parse_args()

    try:
        parser = KubeconfigParser.from_settings(get_settings())
    except ValidationError:
        # DATABASE_URL is not needed to read a kubeconfig
        parser = KubeconfigParser()
    try:
        if args.export_context:
            code = export_context(parser, args.path, args.export_context)
        elif args.validate:
            code = asyncio.run(validate(parser, args.path))
        else:
            code = list_contexts(parser, args.path)
    except (FormatError, OSError) as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        code = 1

    sys.exit(code)


if __name__ == "__main__":
    main()
