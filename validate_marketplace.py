#!/usr/bin/env python3
"""Check a Claude plugin marketplace manifest before publishing it.

Reads ``.claude-plugin/marketplace.json``, confirms it parses, that ``plugins``
is a list, and that every plugin has a name and a source that can be resolved:
relative path sources must exist on disk (resolved against the marketplace
root, the directory that holds ``.claude-plugin``), object sources must name
their source type. Prints a PASS/FAIL report and exits non-zero on failures.
"""
from __future__ import annotations

import argparse
import json
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

DEFAULT_MANIFEST = Path(".claude-plugin") / "marketplace.json"


@dataclass
class ReportEntry:
    name: str
    status: str
    detail: str


class ManifestError(RuntimeError):
    """The manifest could not be read as a JSON object."""


def load_manifest(path: Path) -> Dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ManifestError(f"Manifest not found: {path}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ManifestError(f"Could not read {path}: {exc}") from exc
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ManifestError(
            f"{path} is not valid JSON (line {exc.lineno}, column {exc.colno}): {exc.msg}"
        ) from exc
    if not isinstance(parsed, dict):
        raise ManifestError(f"{path} must contain a JSON object at the top level.")
    return parsed


def marketplace_root(manifest_path: Path) -> Path:
    parent = manifest_path.resolve().parent
    if parent.name == ".claude-plugin":
        return parent.parent
    return parent


def inspect_plugin(plugin: Any, index: int, root: Path) -> ReportEntry:
    if not isinstance(plugin, dict):
        return ReportEntry(
            f"Plugin #{index + 1}", "FAIL", f"Plugin entry must be an object, got {type(plugin).__name__}."
        )
    name = plugin.get("name")
    label = f"Plugin {name}" if isinstance(name, str) and name else f"Plugin #{index + 1}"
    problems: List[str] = []
    details: List[str] = []
    if not name:
        problems.append("Missing `name`.")
    elif not isinstance(name, str):
        problems.append(f"`name` must be a string, got {type(name).__name__}.")

    source = plugin.get("source")
    if source is None:
        problems.append("Missing `source`.")
    elif isinstance(source, str):
        resolved = (root / source).resolve()
        details.append(f"Source: {source} -> {resolved}")
        if not resolved.exists():
            problems.append(f"Source path does not exist: {resolved}")
        elif not resolved.is_dir():
            problems.append(f"Source path is not a directory: {resolved}")
    elif isinstance(source, dict):
        details.append(f"Source keys: {', '.join(sorted(source)) or '<none>'}")
        if not source.get("source"):
            problems.append("Object source is missing its `source` type (e.g. github, url).")
    else:
        problems.append(f"Unsupported source type {type(source).__name__}.")

    if problems:
        return ReportEntry(label, "FAIL", "\n".join(details + problems))
    return ReportEntry(label, "PASS", "\n".join(details))


def validate_manifest(path: Path) -> List[ReportEntry]:
    entries: List[ReportEntry] = []
    manifest = load_manifest(path)
    entries.append(
        ReportEntry(
            f"Parse {path}",
            "PASS",
            f"Top-level keys: {', '.join(sorted(manifest)) or '<none>'}",
        )
    )

    plugins = manifest.get("plugins")
    if not isinstance(plugins, list):
        entries.append(
            ReportEntry("Plugins list", "FAIL", "`plugins` must be a list of plugin entries.")
        )
        return entries
    entries.append(ReportEntry("Plugins list", "PASS", f"{len(plugins)} plugin(s) declared."))

    root = marketplace_root(path)
    seen: Dict[str, int] = {}
    for index, plugin in enumerate(plugins):
        entry = inspect_plugin(plugin, index, root)
        name = plugin.get("name") if isinstance(plugin, dict) else None
        if isinstance(name, str) and name:
            if name in seen:
                entry = ReportEntry(
                    entry.name,
                    "FAIL",
                    "\n".join(
                        filter(None, [entry.detail, f"Duplicate name; also declared as plugin #{seen[name] + 1}."])
                    ),
                )
            else:
                seen[name] = index
        entries.append(entry)
    return entries


def print_report(entries: List[ReportEntry]) -> None:
    print("\nMarketplace validation report\n=============================")
    for entry in entries:
        print(f"[{entry.status}] {entry.name}")
        if entry.detail:
            print(textwrap.indent(entry.detail, "    "))
        print()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="validate-marketplace",
        description="Validate a Claude plugin marketplace manifest.",
    )
    parser.add_argument(
        "manifest",
        nargs="?",
        default=str(DEFAULT_MANIFEST),
        help="Path to marketplace.json (default: %(default)s).",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    try:
        entries = validate_manifest(Path(args.manifest))
    except ManifestError as exc:
        parser.exit(status=1, message=f"{exc}\n")
    print_report(entries)
    if any(entry.status == "FAIL" for entry in entries):
        raise SystemExit("One or more checks failed. See report above for details.")


if __name__ == "__main__":
    main()
