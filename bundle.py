#!/usr/bin/env python3
"""
Source hashing and dependency staging for Lambda functions.

The Pulumi program computes the source hash; the per-function install
command runs this module's ``build`` whenever that hash changes. ``build``
copies the sources (minus excluded files) into a staging directory and
installs their requirements next to them. The staging directory is what the
function's ``pulumi.FileArchive`` points at, so archiving itself is left to
the Pulumi engine.

    python bundle.py hash lambdas/hello
    python bundle.py build --source-dir lambdas/hello --staging-dir build/hello

``build`` prints a JSON document with the staging path and source hash on
stdout; all logging goes to stderr.
"""
import argparse
import base64
import fnmatch
import hashlib
import json
import os
import shutil
import subprocess
import sys
from typing import Dict, Iterable, List, Sequence

from exceptions import DependencyInstallError, PackagingError
from logger_config import get_logger

logger = get_logger("bundle")

DEFAULT_EXCLUDES = [".touch", "Makefile"]
SKIPPED_DIRS = {"__pycache__"}
SKIPPED_SUFFIXES = (".pyc",)


def paths_overlap(first: str, second: str) -> bool:
    """True when the two paths are the same directory or one sits inside the other."""
    first = os.path.realpath(first)
    second = os.path.realpath(second)
    return os.path.commonpath([first, second]) in (first, second)


def merge_excludes(patterns: Iterable[str]) -> List[str]:
    merged = list(patterns or [])
    for pattern in DEFAULT_EXCLUDES:
        if pattern not in merged:
            merged.append(pattern)
    return merged


def _is_excluded(rel_path: str, patterns: Iterable[str]) -> bool:
    base = rel_path.rsplit("/", 1)[-1]
    for pattern in patterns:
        if fnmatch.fnmatch(rel_path, pattern) or fnmatch.fnmatch(base, pattern):
            return True
        if rel_path.startswith(pattern.rstrip("/") + "/"):
            return True
    return False


def iter_source_files(source_dir: str, exclude: Sequence[str] = ()) -> List[str]:
    """Return sorted POSIX paths, relative to source_dir, of files to consider."""
    if not os.path.isdir(source_dir):
        raise PackagingError(f"Source directory {source_dir} does not exist", source_dir=source_dir)

    files = []
    for root, dirs, filenames in os.walk(source_dir):
        dirs[:] = [d for d in dirs if d not in SKIPPED_DIRS]
        for filename in filenames:
            if filename.endswith(SKIPPED_SUFFIXES):
                continue
            rel_path = os.path.relpath(os.path.join(root, filename), source_dir).replace(os.sep, "/")
            if _is_excluded(rel_path, exclude):
                continue
            files.append(rel_path)
    return sorted(files)


def _file_digest(path: str) -> bytes:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.digest()


def compute_source_hash(source_dir: str) -> str:
    """
    Hash every file under source_dir, names and contents, into one base64
    SHA-256 string.

    Nothing is excluded here: the .touch sentinel and the Makefile are part
    of the hash even though they never reach the archive, which is what lets
    ``make force-redeploy`` bust the cache.
    """
    digest = hashlib.sha256()
    for rel_path in iter_source_files(source_dir):
        digest.update(rel_path.encode("utf-8"))
        digest.update(b"\0")
        digest.update(_file_digest(os.path.join(source_dir, rel_path)))
    return base64.b64encode(digest.digest()).decode("utf-8")


def install_requirements(requirements: str, target: str, pip_args: Sequence[str] = ()) -> bool:
    """
    Install requirements into target with pip.

    Returns False when there is no requirements file, True after a
    successful install. pip's own output is sent to stderr.
    """
    if not os.path.isfile(requirements):
        logger.info(f"No {os.path.basename(requirements)} found, skipping dependency installation")
        return False

    cmd = [
        sys.executable, "-m", "pip", "install",
        "-r", requirements,
        "-t", target,
        *pip_args,
    ]
    logger.info(f"Installing dependencies: {' '.join(cmd)}")
    try:
        subprocess.run(cmd, check=True, stdout=sys.stderr)
    except subprocess.CalledProcessError as e:
        raise DependencyInstallError(
            f"Command failed with exit code {e.returncode}: {' '.join(cmd)}",
            command=cmd,
            returncode=e.returncode,
            source_dir=os.path.dirname(requirements),
        ) from e
    return True


def build_bundle(
    source_dir: str,
    staging_dir: str,
    requirements: str = "requirements.txt",
    exclude: Sequence[str] = (),
    pip_args: Sequence[str] = (),
) -> Dict[str, str]:
    """
    Replace staging_dir with a copy of source_dir minus excluded files and
    install its requirements next to it.

    .touch and the Makefile are always excluded. Raises PackagingError when
    the two directories overlap, since staging_dir is wiped first.
    """
    if paths_overlap(source_dir, staging_dir):
        raise PackagingError(
            f"Staging directory {staging_dir} overlaps source directory {source_dir}",
            source_dir=source_dir,
        )
    source_hash = compute_source_hash(source_dir)

    if os.path.exists(staging_dir):
        shutil.rmtree(staging_dir)
    os.makedirs(staging_dir)

    for rel_path in iter_source_files(source_dir, merge_excludes(exclude)):
        destination = os.path.join(staging_dir, rel_path)
        os.makedirs(os.path.dirname(destination), exist_ok=True)
        shutil.copy2(os.path.join(source_dir, rel_path), destination)

    requirements_path = requirements
    if not os.path.isabs(requirements_path):
        requirements_path = os.path.join(source_dir, requirements)
    install_requirements(requirements_path, staging_dir, pip_args)

    logger.info(f"Staged {source_dir} into {staging_dir} ({source_hash})")
    return {
        "staging_dir": os.path.abspath(staging_dir),
        "source_hash": source_hash,
    }


def cmd_hash(args) -> int:
    print(compute_source_hash(args.source_dir))
    return 0


def cmd_build(args) -> int:
    result = build_bundle(
        args.source_dir,
        args.staging_dir,
        requirements=args.requirements,
        exclude=merge_excludes(args.exclude),
        pip_args=args.pip_arg or [],
    )
    print(json.dumps(result))
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="bundle", description="Hash and stage Lambda sources")
    sub = p.add_subparsers(dest="cmd")

    s = sub.add_parser("hash", help="Print the content hash of a source directory")
    s.add_argument("source_dir")
    s.set_defaults(func=cmd_hash)

    s = sub.add_parser("build", help="Copy sources and install requirements into a staging directory")
    s.add_argument("--source-dir", required=True)
    s.add_argument("--staging-dir", required=True, help="Directory to replace with the staged bundle")
    s.add_argument("--requirements", default="requirements.txt",
                   help="Requirements file, relative to the source directory")
    s.add_argument("--exclude", action="append", help="Pattern to leave out of the bundle")
    s.add_argument("--pip-arg", action="append", help="Extra argument passed to pip install")
    s.set_defaults(func=cmd_build)
    return p


def main(argv=None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    if not hasattr(args, "func"):
        p.print_help()
        return 2
    try:
        return args.func(args)
    except PackagingError as e:
        logger.error(e.message)
        return 1


if __name__ == "__main__":
    sys.exit(main())
