"""argparse-based commands: copy, pack, resolve, tags."""

from __future__ import annotations

import logging
import sys
from argparse import ArgumentParser, Namespace
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Sequence

from ocisync_core import (
    CopyOptions,
    ExtendedCopyOptions,
    FileStore,
    OciError,
    OciLayoutStore,
    PackOptions,
    Reference,
    Repository,
    Target,
    copy,
    extended_copy,
    pack_files,
)
from ocisync_core.config import RegistryClientConfig, load_client_config
from ocisync_core.pack import MANIFEST_TYPE_ARTIFACT, MANIFEST_TYPE_IMAGE

logger = logging.getLogger(__name__)

OCI_LAYOUT_PREFIX = "oci:"


@dataclass(frozen=True)
class TargetRef:
    store: Target
    reference: str


def parse_target(raw: str, config: RegistryClientConfig) -> TargetRef:
    """``oci:<dir>[:<tag>|@<digest>]`` selects an OCI layout, anything else a registry."""
    value = raw.strip()
    if value.startswith(OCI_LAYOUT_PREFIX):
        location = value[len(OCI_LAYOUT_PREFIX) :]
        reference = ""
        if "@" in location:
            location, reference = location.split("@", 1)
        else:
            head, sep, tail = location.rpartition(":")
            if sep and head and "/" not in tail:
                location, reference = head, tail
        if not location:
            raise ValueError(f"missing OCI layout directory in {raw!r}")
        return TargetRef(store=OciLayoutStore(Path(location)), reference=reference)
    parsed = Reference.parse(value)
    return TargetRef(store=Repository(parsed, config), reference=parsed.reference)


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="ocisync", description="Replicate OCI artifacts between stores")
    parser.add_argument("--workspace-dir", default=".", help="Workspace root holding config/config.toml")
    parser.add_argument("--insecure", action="store_true", help="Use plain HTTP for registries")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    copy_parser = commands.add_parser("copy", help="Copy an artifact graph from SRC to DST")
    copy_parser.add_argument("source", help="Source reference, registry ref or oci:<dir>:<tag>")
    copy_parser.add_argument("destination", help="Destination reference")
    copy_parser.add_argument("--concurrency", type=int, help="Parallel transfers")
    copy_parser.add_argument("--referrers", action="store_true", help="Also copy artifacts referring to the source")
    copy_parser.add_argument("--follow-subject", action="store_true", help="Also copy subject graphs")

    pack_parser = commands.add_parser("pack", help="Pack local files into a manifest and push it")
    pack_parser.add_argument("target", help="Destination reference")
    pack_parser.add_argument("files", nargs="+", help="FILE or FILE:MEDIATYPE")
    pack_parser.add_argument("--artifact-type", required=True, help="Artifact type of the manifest")
    pack_parser.add_argument("--annotation", action="append", default=[], help="Manifest annotation KEY=VALUE")
    pack_parser.add_argument("--artifact-manifest", action="store_true", help="Pack an OCI artifact manifest")

    resolve_parser = commands.add_parser("resolve", help="Print the digest a reference points to")
    resolve_parser.add_argument("reference")

    tags_parser = commands.add_parser("tags", help="List tags of a repository")
    tags_parser.add_argument("repository")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    config = load_client_config(Path(args.workspace_dir))
    if args.insecure:
        config = replace(config, insecure=True)

    handlers = {
        "copy": _run_copy,
        "pack": _run_pack,
        "resolve": _run_resolve,
        "tags": _run_tags,
    }
    logger.debug("ocisync command=%s workspace=%s insecure=%s", args.command, args.workspace_dir, config.insecure)
    try:
        return handlers[args.command](args, config)
    except (OciError, ValueError, FileNotFoundError) as exc:
        print(f"[ocisync:{args.command}] failed: {exc}", file=sys.stderr)
        return 1


def _run_copy(args: Namespace, config: RegistryClientConfig) -> int:
    source = parse_target(args.source, config)
    destination = parse_target(args.destination, config)
    if not source.reference:
        raise ValueError("source reference needs a tag or digest")
    concurrency = args.concurrency or config.concurrency
    if args.referrers:
        root = extended_copy(
            source.store,
            source.reference,
            destination.store,
            destination.reference,
            ExtendedCopyOptions(concurrency=concurrency, follow_subject=args.follow_subject),
        )
    else:
        root = copy(
            source.store,
            source.reference,
            destination.store,
            destination.reference,
            CopyOptions(concurrency=concurrency, follow_subject=args.follow_subject),
        )
    print(f"[ocisync:copy] copied {args.source} -> {args.destination}")
    print(f"[ocisync:copy] digest={root.digest}")
    return 0


def _run_pack(args: Namespace, config: RegistryClientConfig) -> int:
    destination = parse_target(args.target, config)
    annotations: dict[str, str] = {}
    for item in args.annotation:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(f"invalid annotation {item!r}, expected KEY=VALUE")
        annotations[key] = value

    files: list[Path | tuple[Path, str]] = []
    for item in args.files:
        path, sep, media_type = item.rpartition(":")
        if sep and path and not Path(item).exists():
            files.append((Path(path), media_type))
        else:
            files.append(Path(item))

    staging = FileStore(Path.cwd())
    manifest_type = MANIFEST_TYPE_ARTIFACT if args.artifact_manifest else MANIFEST_TYPE_IMAGE
    root = pack_files(
        staging,
        args.artifact_type,
        files,
        PackOptions(manifest_type=manifest_type, annotations=annotations),
    )
    copy(staging, root.digest, destination.store, destination.reference, CopyOptions(concurrency=config.concurrency))
    print(f"[ocisync:pack] pushed {len(files)} file(s) to {args.target}")
    print(f"[ocisync:pack] digest={root.digest}")
    return 0


def _run_resolve(args: Namespace, config: RegistryClientConfig) -> int:
    target = parse_target(args.reference, config)
    if not target.reference:
        raise ValueError("reference needs a tag or digest")
    descriptor = target.store.resolve(target.reference)
    print(descriptor.digest)
    return 0


def _run_tags(args: Namespace, config: RegistryClientConfig) -> int:
    target = parse_target(args.repository, config)
    for tag in target.store.tags():
        print(tag)
    return 0
