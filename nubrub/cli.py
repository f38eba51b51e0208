"""NubRub - Command-line interface for managing audio packs.

Usage:
    nubrub list
    nubrub show <pack_id>
    nubrub import <bundle> [--on-collision abort|overwrite|rename]
    nubrub export <pack_id> <destination>
    nubrub delete <pack_id>

Global options: --packs-dir (default: NUBRUB_PACKS_DIR or the per-user data
directory) and --verbose (debug logging, including skipped packs).
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

from nubrub import __version__
from nubrub.errors import PackError, PackNotFoundError
from nubrub.exporter import export_pack
from nubrub.importer import CollisionPolicy, ImportOutcome, import_bundle
from nubrub.repository import PackRepository

logger = logging.getLogger(__name__)


def _cmd_list(repository: PackRepository, args: argparse.Namespace) -> int:
    for record in repository.list_packs():
        kind = "built-in" if record.is_builtin else "custom"
        print(f"{record.pack_id:<24} {record.name:<32} {record.version:<8} {kind}")
    return 0


def _cmd_show(repository: PackRepository, args: argparse.Namespace) -> int:
    record = repository.get_pack(args.pack_id)
    if record is None:
        raise PackNotFoundError(args.pack_id)

    print(f"Pack: {record.name}")
    print(f"Id: {record.pack_id}")
    print(f"Version: {record.version}")
    if record.is_builtin:
        print("Built-in pack (sounds are embedded)")
        return 0

    print(f"Directory: {record.directory}")
    assets = repository.resolve_assets(record)
    print(f"Rub sounds ({len(assets.rub_sounds)}):")
    for path in assets.rub_sounds:
        print(f"  - {path.name}")
    print(f"Finish sounds ({len(assets.finish_sounds)}):")
    for path in assets.finish_sounds:
        print(f"  - {path.name}")
    return 0


def _cmd_import(repository: PackRepository, args: argparse.Namespace) -> int:
    result = import_bundle(
        args.bundle,
        repository,
        on_collision=CollisionPolicy(args.on_collision),
        verify_wav_headers=args.verify_wav or None,
    )
    if result.outcome == ImportOutcome.ABORTED:
        print(
            f"A pack named '{result.name}' already exists; "
            "use --on-collision overwrite or rename",
            file=sys.stderr,
        )
        return 1
    print(f"Imported '{result.name}' as {result.pack_id} ({result.outcome})")
    return 0


def _cmd_export(repository: PackRepository, args: argparse.Namespace) -> int:
    archive = export_pack(repository, args.pack_id, args.destination)
    print(f"Exported {args.pack_id} to {archive}")
    return 0


def _cmd_delete(repository: PackRepository, args: argparse.Namespace) -> int:
    repository.delete_pack(args.pack_id)
    print(f"Deleted {args.pack_id}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nubrub", description="Manage NubRub audio packs")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--packs-dir",
        type=Path,
        default=None,
        help="Packs root directory (default: NUBRUB_PACKS_DIR or the user data directory)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List built-in and custom packs")
    list_parser.set_defaults(handler=_cmd_list)

    show_parser = subparsers.add_parser("show", help="Show one pack and its sounds")
    show_parser.add_argument("pack_id")
    show_parser.set_defaults(handler=_cmd_show)

    import_parser = subparsers.add_parser("import", help="Import a .nubrub archive or pack directory")
    import_parser.add_argument("bundle", type=Path)
    import_parser.add_argument(
        "--on-collision",
        choices=[policy.value for policy in CollisionPolicy],
        default=CollisionPolicy.ABORT.value,
        help="What to do when a pack with the same name exists (default: abort)",
    )
    import_parser.add_argument(
        "--verify-wav",
        action="store_true",
        help="Reject sounds that are not RIFF/WAVE files",
    )
    import_parser.set_defaults(handler=_cmd_import)

    export_parser = subparsers.add_parser("export", help="Export a custom pack to a .nubrub archive")
    export_parser.add_argument("pack_id")
    export_parser.add_argument("destination", type=Path)
    export_parser.set_defaults(handler=_cmd_export)

    delete_parser = subparsers.add_parser("delete", help="Delete a custom pack")
    delete_parser.add_argument("pack_id")
    delete_parser.set_defaults(handler=_cmd_delete)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        repository = PackRepository(args.packs_dir)
        return args.handler(repository, args)
    except PackError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except Exception:
        logger.exception("Unexpected error running %s", args.command)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
