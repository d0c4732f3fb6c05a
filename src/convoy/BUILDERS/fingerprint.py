"""
Build context fingerprinting.

The fingerprint covers every file under the context plus the build descriptor and
build args. It does not know what a build step reads from outside the context (a
package index, the network), so an unchanged fingerprint can hide a stale image.
"""
import fnmatch
import hashlib
import os
import stat
from typing import Dict, Iterator, List, Optional, Tuple

ALWAYS_IGNORED = {".convoy", ".git", "__pycache__"}


def read_ignore_patterns(context_dir: str) -> List[Tuple[bool, str]]:
    """
    Reads ``.dockerignore``. Returns (negated, pattern) pairs in file order.
    """
    path = os.path.join(context_dir, ".dockerignore")
    patterns = []
    if not os.path.isfile(path):
        return patterns
    with open(path, 'r') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            negated = line.startswith('!')
            pattern = line[1:] if negated else line
            patterns.append((negated, pattern.strip('/')))
    return patterns


def is_ignored(rel_path: str, patterns: List[Tuple[bool, str]]) -> bool:
    """
    Last matching pattern wins. A pattern matching a directory ignores its contents.
    """
    ignored = False
    parts = rel_path.split('/')
    prefixes = ['/'.join(parts[:i]) for i in range(1, len(parts) + 1)]
    for negated, pattern in patterns:
        if any(fnmatch.fnmatchcase(p, pattern) for p in prefixes):
            ignored = not negated
    return ignored


def iter_context_files(context_dir: str,
                       patterns: Optional[List[Tuple[bool, str]]] = None) -> Iterator[str]:
    """
    Yields context-relative posix paths of the files to send to the build, sorted.
    """
    if patterns is None:
        patterns = read_ignore_patterns(context_dir)
    found = []
    for root, dirs, files in os.walk(context_dir):
        dirs[:] = sorted(d for d in dirs if d not in ALWAYS_IGNORED)
        for name in files:
            full = os.path.join(root, name)
            rel = os.path.relpath(full, context_dir).replace(os.sep, '/')
            if not is_ignored(rel, patterns):
                found.append(rel)
    return iter(sorted(found))


def compute_fingerprint(context_dir: str,
                        descriptor_file: str,
                        build_args: Optional[Dict[str, str]] = None) -> str:
    """
    Computes a sha256 hex digest over the build inputs.

    :param context_dir: The build context directory.
    :param descriptor_file: The Dockerfile (may live outside the context).
    :param build_args: Build arguments, which change RUN step behaviour.
    :return: Hex digest.
    """
    digest = hashlib.sha256()
    with open(descriptor_file, 'rb') as f:
        digest.update(b"descriptor\0")
        digest.update(f.read())
    for key in sorted(build_args or {}):
        digest.update(f"arg\0{key}={build_args[key]}\0".encode())

    for rel in iter_context_files(context_dir):
        full = os.path.join(context_dir, rel)
        mode = os.stat(full).st_mode
        if not stat.S_ISREG(mode):
            continue
        digest.update(f"file\0{rel}\0{1 if mode & stat.S_IXUSR else 0}\0".encode())
        with open(full, 'rb') as f:
            for chunk in iter(lambda: f.read(65536), b''):
                digest.update(chunk)
        digest.update(b"\0")
    return digest.hexdigest()
