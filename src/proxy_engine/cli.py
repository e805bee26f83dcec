"""
Command line membrane for the engine.

Usage:
    proxy-engine deploy <schema.yaml> --deployer <identity> [--db path]
    proxy-engine call <schema_id> <procedure> [--args '[...]'] [--caller id | --key seedfile]
    proxy-engine describe <schema_id>
    proxy-engine schemas
    proxy-engine dump <schema_id> <table>
    proxy-engine keygen <seedfile>
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from .config import load_config
from .identity import Signer, load_signer, save_signer
from .kernel.compiler import load_schema_file
from .kernel.engine import ProxyEngine
from .kernel.errors import EngineError


def _open_engine(args: argparse.Namespace) -> ProxyEngine:
    config = load_config(getattr(args, "config", None))
    db_path = args.db or config.db_path
    if getattr(args, "trace", False):
        config.trace = True
    return ProxyEngine(db_path, config=config)


def cmd_deploy(args: argparse.Namespace) -> int:
    """Compile and register a schema file."""
    source_path = Path(args.source)
    if not source_path.exists():
        print(f"✗ Schema source not found: {source_path}", file=sys.stderr)
        return 1

    deployer = args.deployer
    if args.key:
        try:
            deployer = load_signer(args.key).identity
        except EngineError as exc:
            print(f"✗ {exc.kind.value}: {exc.message}", file=sys.stderr)
            return 1
        except OSError as exc:
            print(f"✗ Cannot read signing key: {exc}", file=sys.stderr)
            return 1
    if not deployer:
        print("✗ A deployer identity is required (--deployer or --key)", file=sys.stderr)
        return 1

    engine = _open_engine(args)
    try:
        schema_id = engine.deploy(load_schema_file(source_path), deployer=deployer, height=args.height)
    except EngineError as exc:
        print(f"✗ {exc.kind.value}: {exc.message}", file=sys.stderr)
        return 1
    finally:
        engine.close()

    print(f"✓ Deployed {source_path.name}")
    print(f"  Schema ID: {schema_id}")
    return 0


def cmd_call(args: argparse.Namespace) -> int:
    """Run one transaction against a deployed schema."""
    call_args: Any = []
    if args.args:
        try:
            call_args = json.loads(args.args)
        except json.JSONDecodeError as e:
            print(f"✗ Invalid JSON args: {e}", file=sys.stderr)
            return 1

    engine = _open_engine(args)
    try:
        if args.key:
            try:
                signer = load_signer(args.key)
            except EngineError as exc:
                print(f"✗ {exc.kind.value}: {exc.message}", file=sys.stderr)
                return 1
            except OSError as exc:
                print(f"✗ Cannot read signing key: {exc}", file=sys.stderr)
                return 1
            envelope = signer.sign_call(
                args.schema_id, args.procedure, call_args, height=args.height, nonce=args.nonce
            )
            result = engine.call_signed(envelope, output_sink=print)
        else:
            result = engine.call(
                args.schema_id,
                args.procedure,
                call_args,
                caller=args.caller or "",
                height=args.height,
                output_sink=print,
            )
    finally:
        engine.close()

    if not result.ok:
        print(f"✗ {result.error_kind}: {result.error_message}", file=sys.stderr)
        return 1

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0


def cmd_describe(args: argparse.Namespace) -> int:
    """Show a schema's procedures and foreign stubs."""
    engine = _open_engine(args)
    try:
        descriptor = engine.describe(args.schema_id)
        capabilities = engine.list_capabilities(args.schema_id)
    except EngineError as exc:
        print(f"✗ {exc.kind.value}: {exc.message}", file=sys.stderr)
        return 1
    finally:
        engine.close()

    print()
    print(f"  {descriptor.name}  ({descriptor.id})")
    print(f"  owner: {descriptor.owner}")
    print()
    print(f"  Tables ({len(descriptor.tables)}):")
    for table in descriptor.tables.values():
        cols = ", ".join(f"{c.name} {c.type.value}" for c in table.columns)
        print(f"    {table.name:24} {cols}")
    print()
    print(f"  Procedures and foreign stubs ({len(capabilities)}):")
    for cap in capabilities:
        mods = " ".join(cap.modifiers) or cap.kind.value
        print(f"    {cap.signature:50} {mods}")
    print()
    return 0


def cmd_schemas(args: argparse.Namespace) -> int:
    """List deployed schemas."""
    engine = _open_engine(args)
    try:
        schemas = engine.list_schemas()
    finally:
        engine.close()

    for descriptor in sorted(schemas, key=lambda d: d.name):
        print(f"{descriptor.id}  {descriptor.name:24} owner={descriptor.owner}")
    if not schemas:
        print("(no schemas deployed)")
    return 0


def cmd_dump(args: argparse.Namespace) -> int:
    """Print the committed rows of a table."""
    engine = _open_engine(args)
    try:
        rows = engine.dump_table(args.schema_id, args.table)
    except EngineError as exc:
        print(f"✗ {exc.kind.value}: {exc.message}", file=sys.stderr)
        return 1
    finally:
        engine.close()

    print(json.dumps(rows, indent=2, default=str))
    return 0


def cmd_keygen(args: argparse.Namespace) -> int:
    """Write a fresh Ed25519 seed and print the identity it signs as."""
    path = Path(args.path).expanduser()
    if path.exists() and not args.force:
        print(f"✗ Refusing to overwrite {path} (use --force)", file=sys.stderr)
        return 1
    signer = Signer.generate()
    save_signer(signer, path)
    print(f"✓ Key written to {path}")
    print(f"  Identity: {signer.identity}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proxy-engine",
        description="Deploy schemas and call procedures across them",
    )
    parser.add_argument("--config", help="TOML config file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    deploy_parser = subparsers.add_parser("deploy", help="Compile and register a schema")
    deploy_parser.add_argument("source", help="YAML schema source")
    deploy_parser.add_argument("--deployer", help="Owner identity")
    deploy_parser.add_argument("--key", help="Seed file; its identity becomes the owner")
    deploy_parser.add_argument("--height", type=int, default=0, help="Block height")
    deploy_parser.add_argument("--db", help="Database path")
    deploy_parser.set_defaults(func=cmd_deploy)

    call_parser = subparsers.add_parser("call", help="Call a procedure")
    call_parser.add_argument("schema_id", help="Schema ID")
    call_parser.add_argument("procedure", help="Procedure name")
    call_parser.add_argument("--args", "-a", help="JSON list or object of arguments")
    call_parser.add_argument("--caller", help="Caller identity (unsigned call)")
    call_parser.add_argument("--key", help="Seed file used to sign the call")
    call_parser.add_argument("--height", type=int, default=0, help="Block height")
    call_parser.add_argument("--nonce", type=int, default=0, help="Nonce for signed calls")
    call_parser.add_argument("--trace", action="store_true", help="Print call trace")
    call_parser.add_argument("--db", help="Database path")
    call_parser.set_defaults(func=cmd_call)

    describe_parser = subparsers.add_parser("describe", help="Show a schema")
    describe_parser.add_argument("schema_id", help="Schema ID")
    describe_parser.add_argument("--db", help="Database path")
    describe_parser.set_defaults(func=cmd_describe)

    schemas_parser = subparsers.add_parser("schemas", help="List deployed schemas")
    schemas_parser.add_argument("--db", help="Database path")
    schemas_parser.set_defaults(func=cmd_schemas)

    dump_parser = subparsers.add_parser("dump", help="Print a table's committed rows")
    dump_parser.add_argument("schema_id", help="Schema ID")
    dump_parser.add_argument("table", help="Table name")
    dump_parser.add_argument("--db", help="Database path")
    dump_parser.set_defaults(func=cmd_dump)

    keygen_parser = subparsers.add_parser("keygen", help="Create a signing key")
    keygen_parser.add_argument("path", help="Where to write the seed")
    keygen_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")
    keygen_parser.set_defaults(func=cmd_keygen, db=None)

    return parser


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
