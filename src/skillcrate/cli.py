from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from dataclasses import asdict, is_dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from ._version import __version__
from .backup import BackupManager
from .config import Config, load_config
from .errors import PartialRemovalError, SkillcrateError
from .files import format_bytes
from .installer import DryRunPreview, OverwriteRequired, install_skill
from .interrupts import EXIT_SIGINT
from .skill_package import package_skill
from .uninstaller import UninstallDryRunPreview, UninstallPartialFailure, uninstall_skill
from .updater import UpdateDryRunPreview, update_skill
from .validation import validate_skill_directory
from .versions import format_diff_line


def _jsonable(obj: Any) -> Any:
    if is_dataclass(obj) and not isinstance(obj, type):
        return {k: _jsonable(v) for k, v in asdict(obj).items()}
    if isinstance(obj, dict):
        return {str(k): _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonable(v) for v in obj]
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, bytes):
        return None
    return obj


def _print_json(payload: Any) -> None:
    print(json.dumps(_jsonable(payload), indent=2, sort_keys=True))


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _print_warnings(warnings: list[str]) -> None:
    for w in warnings:
        print(f"warning: {w}")


def _load_runtime_config(args: argparse.Namespace) -> Config:
    cfg = load_config(args.config)
    if getattr(args, "backup_dir", None):
        cfg = Config(**{**asdict(cfg), "backup_dir": args.backup_dir})
    return cfg


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillcrate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Package, install, update and remove skills.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SKILLCRATE_CONFIG_PATH
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"skillcrate {__version__}")
    p.add_argument("--config", help="Path to config.json")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Log progress (-vv for debug)")

    sub = p.add_subparsers(dest="cmd", required=True)

    def _add_scope(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--scope",
            help='"project" (./.claude/skills), "personal" (~/.claude/skills) or a directory path',
        )
        parser.add_argument("--json", action="store_true", help="Print JSON output")

    pkg = sub.add_parser("package", help="Package a skill directory into a .skill file")
    pkg.add_argument("path", help="Skill directory")
    pkg.add_argument("--output", "-o", default=".", help="Output directory (default: .)")
    pkg.add_argument("--force", "-f", action="store_true", help="Overwrite an existing package")
    pkg.add_argument("--skip-validation", action="store_true")
    pkg.add_argument("--json", action="store_true", help="Print JSON output")

    ins = sub.add_parser("install", aliases=["i"], help="Install a .skill package")
    ins.add_argument("package", help="Path to the .skill file")
    _add_scope(ins)
    ins.add_argument("--force", "-f", action="store_true", help="Overwrite an existing skill")
    ins.add_argument("--dry-run", action="store_true", help="Show what would be installed")
    ins.add_argument("--thorough", action="store_true", help="Compare file hashes, not just sizes")
    ins.add_argument("--keep-backup", action="store_true")
    ins.add_argument("--backup-dir")

    upd = sub.add_parser("update", help="Update an installed skill from a .skill package")
    upd.add_argument("skill", help="Installed skill name")
    upd.add_argument("package", help="Path to the .skill file")
    _add_scope(upd)
    upd.add_argument("--force", "-f", action="store_true", help="Proceed past advisory findings")
    upd.add_argument("--dry-run", action="store_true", help="Show changes without applying them")
    upd.add_argument("--thorough", action="store_true", help="Compare file hashes, not just sizes")
    upd.add_argument("--no-backup", action="store_true", help="Skip the backup (no rollback possible)")
    upd.add_argument("--keep-backup", action="store_true", help="Keep the backup after success")
    upd.add_argument("--backup-dir")

    rm = sub.add_parser("uninstall", aliases=["remove", "rm"], help="Remove installed skills")
    rm.add_argument("skills", nargs="+", help="Skill name(s)")
    _add_scope(rm)
    rm.add_argument("--force", "-f", action="store_true", help="Proceed past advisory findings")
    rm.add_argument("--dry-run", action="store_true", help="List files without removing them")

    ver = sub.add_parser("verify", help="Check a skill directory")
    ver.add_argument("path", help="Skill directory")
    ver.add_argument("--json", action="store_true", help="Print JSON output")

    bk = sub.add_parser("backups", help="List backups of a skill")
    bk.add_argument("skill", help="Skill name")
    bk.add_argument("--backup-dir")
    bk.add_argument("--json", action="store_true", help="Print JSON output")

    return p


def cmd_package(args: argparse.Namespace) -> int:
    pkg = package_skill(
        Path(args.path),
        output_dir=Path(args.output),
        force=args.force,
        skip_validation=args.skip_validation,
    )
    if pkg.requires_overwrite:
        print(f"error: {pkg.package_path} already exists (use --force to overwrite)", file=sys.stderr)
        return 1
    payload = {
        "package_path": str(pkg.package_path),
        "sha256": pkg.sha256,
        "size_bytes": pkg.size_bytes,
        "file_count": pkg.file_count,
        "warnings": pkg.warnings,
    }
    if args.json:
        _print_json(payload)
        return 0
    print(f"package: {pkg.package_path}")
    print(f"files: {pkg.file_count}")
    print(f"size: {format_bytes(pkg.size_bytes)}")
    print(f"sha256: {pkg.sha256}")
    _print_warnings(pkg.warnings)
    return 0


def cmd_install(args: argparse.Namespace) -> int:
    cfg = _load_runtime_config(args)
    result = install_skill(
        Path(args.package).expanduser(),
        scope=args.scope,
        force=args.force,
        dry_run=args.dry_run,
        thorough=args.thorough,
        keep_backup=args.keep_backup,
        config=cfg,
    )
    if args.json:
        _print_json(result)
        return 2 if isinstance(result, OverwriteRequired) else 0

    if isinstance(result, DryRunPreview):
        print(f"dry run: would install {result.skill_name} to {result.target_path}")
        _print_table([["PATH", "SIZE"]] + [[f.path + ("/" if f.is_dir else ""), format_bytes(f.size)] for f in result.files])
        print(f"total: {format_bytes(result.total_size)}")
        if result.would_overwrite:
            print(f"would overwrite {len(result.conflicts)} existing file(s)")
        _print_warnings(result.warnings)
        return 0
    if isinstance(result, OverwriteRequired):
        changed = [f for f in result.files if f.would_modify]
        print(f"{result.skill_name} is already installed at {result.existing_path}")
        for f in changed:
            print(f"  {'modify' if f.exists_in_target else 'add'}: {f.path}")
        print("Use --force to overwrite.", file=sys.stderr)
        return 2

    print(f"installed: {result.skill_name} -> {result.skill_path}")
    print(f"files: {result.file_count} ({format_bytes(result.size)})")
    if result.backup_path is not None:
        print(f"backup: {result.backup_path}")
    _print_warnings(result.warnings)
    return 0


def cmd_update(args: argparse.Namespace) -> int:
    cfg = _load_runtime_config(args)
    result = update_skill(
        args.skill,
        Path(args.package).expanduser(),
        scope=args.scope,
        force=args.force,
        dry_run=args.dry_run,
        no_backup=args.no_backup,
        keep_backup=args.keep_backup,
        thorough=args.thorough,
        config=cfg,
    )
    if args.json:
        _print_json(result)
        return 0

    if isinstance(result, UpdateDryRunPreview):
        cmp = result.comparison
        print(f"dry run: update {result.skill_name} at {result.path}")
        _print_table(
            [
                ["", "FILES", "SIZE"],
                ["current", str(result.current_version.file_count), format_bytes(result.current_version.size)],
                ["new", str(result.new_version.file_count), format_bytes(result.new_version.size)],
            ]
        )
        for change in cmp.added + cmp.modified + cmp.removed:
            print(format_diff_line(change))
        if not cmp.has_changes:
            print("no file changes")
        else:
            sign = "+" if cmp.size_change >= 0 else "-"
            print(f"net size change: {sign}{format_bytes(abs(cmp.size_change))}")
        if result.downgrade is not None:
            print(f"warning: {result.downgrade.message}")
        return 0

    print(f"updated: {result.skill_name} at {result.path}")
    print(f"files: {result.previous_file_count} -> {result.current_file_count}")
    print(f"size: {format_bytes(result.previous_size)} -> {format_bytes(result.current_size)}")
    if result.backup_path is not None and not result.backup_will_be_removed:
        print(f"backup: {result.backup_path}")
    _print_warnings(result.warnings)
    return 0


def _print_uninstall_results(results: list[Any], *, as_json: bool) -> None:
    if as_json:
        _print_json(results)
        return
    for result in results:
        if isinstance(result, UninstallDryRunPreview):
            print(f"dry run: would remove {result.path} ({len(result.files)} entries, {format_bytes(result.total_size)})")
            for f in result.files:
                print(f"  {f.relative_path}{'/' if f.is_dir and not f.is_symlink else ''}")
            _print_warnings([f.detail for f in result.findings] + result.warnings)
            continue
        print(f"removed: {result.skill_name} ({result.files_removed} files, {format_bytes(result.bytes_freed)})")
        _print_warnings(result.warnings)


def cmd_uninstall(args: argparse.Namespace) -> int:
    cfg = _load_runtime_config(args)
    results: list[Any] = []
    try:
        for name in args.skills:
            result = uninstall_skill(name, scope=args.scope, force=args.force, dry_run=args.dry_run, config=cfg)
            if isinstance(result, UninstallPartialFailure):
                raise PartialRemovalError(
                    name,
                    files_removed=result.files_removed,
                    files_remaining=result.files_remaining,
                    last_error=result.last_error,
                )
            results.append(result)
    except SkillcrateError:
        # Skills handled before the failure are already gone; report them.
        if results:
            _print_uninstall_results(results, as_json=args.json)
        raise

    _print_uninstall_results(results, as_json=args.json)
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    report = validate_skill_directory(Path(args.path).expanduser().resolve())
    if args.json:
        _print_json(report)
    elif report.valid:
        print("ok")
    else:
        for e in report.errors:
            print(f"invalid: {e}")
    return 0 if report.valid else 1


def cmd_backups(args: argparse.Namespace) -> int:
    cfg = _load_runtime_config(args)
    backups = BackupManager(cfg).list_backups(args.skill)
    if args.json:
        _print_json([str(p) for p in backups])
        return 0
    rows = [["BACKUP", "SIZE"]]
    for p in backups:
        rows.append([p.name, format_bytes(p.stat().st_size)])
    if len(rows) == 1:
        print(f"no backups for {args.skill} in {cfg.backup_path}")
        return 0
    _print_table(rows)
    return 0


def _configure_logging(verbosity: int) -> None:
    if verbosity <= 0:
        return
    logging.basicConfig(
        level=logging.DEBUG if verbosity > 1 else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    try:
        if args.cmd == "package":
            return cmd_package(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd == "update":
            return cmd_update(args)
        if args.cmd in ("uninstall", "remove", "rm"):
            return cmd_uninstall(args)
        if args.cmd == "verify":
            return cmd_verify(args)
        if args.cmd == "backups":
            return cmd_backups(args)
        raise AssertionError("unreachable")
    except SkillcrateError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("error: interrupted", file=sys.stderr)
        return EXIT_SIGINT


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
