"""Render a Wiki.js bundle into a folder or check existing manifests.

Usage:
   - Must be called from parent folder like so:
      $ python scripts/render_bundle.py render config.yaml manifests/
      $ python scripts/render_bundle.py check manifests/*.yaml

   - `WIKIGEN_STORAGE_CLASSES` lists the StorageClasses that exist in the
     target cluster (default: `standard`).

"""

import argparse
import os
import sys
from pathlib import Path
from typing import List

import yaml

import wikigen.api
import wikigen.generate
import wikigen.logstreams
import wikigen.manifests
import wikigen.validate


def render(config_file: Path, folder: Path, known: List[str]) -> int:
    raw = yaml.safe_load(config_file.read_text()) or {}
    cfg, err = wikigen.generate.compile_config(raw)
    if err:
        print(f"Invalid config: {err.field}: {err.message}")
        return 1

    docs, err = wikigen.generate.compile_bundle(cfg, known)
    if err:
        print(f"{err.kind.value}: {err.resource}: {err.field}: {err.message}")
        return 1

    paths, err2 = wikigen.manifests.save_bundle(folder, docs)
    if err2:
        return 1

    for path in paths:
        print(f"Wrote: {path}")
    return 0


def check(files: List[Path], known: List[str]) -> int:
    manifests: List[dict] = []
    for fname in files:
        docs, err = wikigen.manifests.load_yaml(fname.read_text())
        if err:
            print(f"Cannot parse {fname}")
            return 1
        manifests.extend(docs)

    rset, err = wikigen.manifests.parse_resources(manifests)
    if not err:
        rset, err = wikigen.validate.validate_resources(rset, known)
    if err:
        print(f"{err.kind.value}: {err.resource}: {err.field}: {err.message}")
        return 1

    foreign = [_ for _ in manifests if not wikigen.manifests.is_wikigen_manifest(_)]
    print(f"OK: {len(rset.objects)} resources, {len(foreign)} not generated by wikigen")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Wiki.js bundle generator")
    sub = parser.add_subparsers(dest="command", required=True)

    p_render = sub.add_parser("render", help="render a config into manifests")
    p_render.add_argument("config", type=Path)
    p_render.add_argument("folder", type=Path)

    p_check = sub.add_parser("check", help="validate existing manifests")
    p_check.add_argument("files", type=Path, nargs="+")

    args = parser.parse_args()

    wikigen.logstreams.setup(os.getenv("WIKIGEN_LOGLEVEL", "error"))
    known = wikigen.api.split_storage_classes(
        os.getenv("WIKIGEN_STORAGE_CLASSES", "standard")
    )

    if args.command == "render":
        return render(args.config, args.folder, known)
    return check(args.files, known)


if __name__ == "__main__":
    sys.exit(main())
