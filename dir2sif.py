#!/usr/bin/env python3
"""
dir2sif - Adds host directories to a SIF container image as an overlay partition

This tool walks one or more directory trees, streams them as a tar archive into
sqfstar to build a SquashFS image, then clones a base SIF image and appends the
SquashFS image to the clone as an overlay data partition.
"""

import argparse
import io
import os
import posixpath
import subprocess
import sys
import tarfile
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Iterator, NamedTuple, Optional, Union

import mmh3


ENV_SCRIPT_DIRS = ("/.singularity.d", "/.singularity.d/env")
ENV_SCRIPT_PATH = "/.singularity.d/env/99_dir2singularity.sh"

OVERLAY_FILE_NAME = "dir.sqfs"

# SIF global header layout: 32 byte launch script, 10 byte magic, 3 byte version, 3 byte arch
SIF_MAGIC = b"SIF_MAGIC"
SIF_MAGIC_OFFSET = 32
SIF_ARCH_OFFSET = 45
SIF_ARCH_SIZE = 3

SIF_ARCH_NAMES = {
    1: "386",
    2: "amd64",
    3: "arm",
    4: "arm64",
    5: "ppc64",
    6: "ppc64le",
    7: "mips",
    8: "mipsle",
    9: "mips64",
    10: "mips64le",
    11: "s390x",
    12: "riscv64",
}

# Descriptor values understood by `sif add`
SIF_DATATYPE_PARTITION = 4
SIF_PARTTYPE_OVERLAY = 4
SIF_PARTFS_SQUASHFS = 1
SIF_DEFAULT_GROUP = 1

StrPath = Union[str, os.PathLike]


class Dir2SifError(Exception):
    """Base class for failures while building the overlay image."""


class WalkError(Dir2SifError):
    """A node of a source tree could not be examined."""


class CompressorError(Dir2SifError):
    """The filesystem compressor could not be started or did not succeed."""


class ContainerPatchError(Dir2SifError):
    """The container image could not be cloned or patched."""


def log_message(message: str):
    """Print a timestamped message to stderr."""
    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
    print(f"[{timestamp}] {message}", file=sys.stderr)


def join_path(prefix: str, suffix: str) -> str:
    """
    Join a destination prefix and a path suffix into a clean posix path.

    The suffix is always treated as relative to the prefix, so a suffix with a
    leading separator does not replace the prefix. Repeated separators and
    '.' components are removed.

    Examples:
        >>> join_path("/x", "/b/c")
        '/x/b/c'
        >>> join_path("/data/", "")
        '/data'
    """
    suffix = suffix.lstrip("/")
    if not prefix:
        joined = suffix
    elif not suffix:
        joined = prefix
    else:
        joined = posixpath.join(prefix, suffix)

    if not joined:
        return ""

    joined = posixpath.normpath(joined)
    # normpath keeps a leading '//' as POSIX allows it to be special
    if joined.startswith("//"):
        joined = "/" + joined.lstrip("/")
    return joined


class RemapRule(NamedTuple):
    """Prefix substitution from a source path to a destination path."""
    source_prefix: str
    destination_prefix: str


def parse_remap_rule(text: str) -> RemapRule:
    """
    Parse a remap rule given as 'find:replace'.

    Raises:
        ValueError: If the text does not contain exactly one ':'
    """
    parts = text.split(":")
    if len(parts) != 2:
        raise ValueError(f"invalid replacement '{text}', expected FIND:REPLACE")
    return RemapRule(parts[0], parts[1])


def remap(path: str, rules: Iterable[RemapRule]) -> str:
    """
    Map a source path to its destination path.

    Rules are tried in the order given and the first rule whose source prefix
    is a prefix of the path wins, even if a later rule has a longer matching
    prefix. The remainder of the path is joined onto the destination prefix.
    A path matched by no rule is returned unchanged.
    """
    for rule in rules:
        if path.startswith(rule.source_prefix):
            return join_path(rule.destination_prefix, path[len(rule.source_prefix):])
    return path


def parse_env_var(text: str) -> tuple[str, str]:
    """
    Parse an environment variable given as 'KEY=VALUE'.

    Raises:
        ValueError: If the text does not contain exactly one '='
    """
    parts = text.split("=")
    if len(parts) != 2:
        raise ValueError(f"invalid environment variable '{text}', expected KEY=VALUE")
    return parts[0], parts[1]


def normalize_permissions(mode: int) -> int:
    """
    Compute the archived permission bits of a regular file.

    The owner's rwx bits are copied to group and other, then the result is
    capped at 0o755. Setuid, setgid and sticky bits are always dropped.

    Examples:
        >>> oct(normalize_permissions(0o100640))
        '0o644'
        >>> oct(normalize_permissions(0o4700))
        '0o755'
    """
    perms = mode & 0o700
    perms |= perms >> 3 | perms >> 6
    return perms & 0o755


class EntryRegistry:
    """Destination paths already written during one run.

    A single registry is shared by every source tree and by the environment
    script so that each destination path reaches the archive at most once.
    """

    def __init__(self):
        self._paths: set[str] = set()

    def claim(self, path: str) -> bool:
        """Record a destination path. Returns False if it was already recorded."""
        if path in self._paths:
            return False
        self._paths.add(path)
        return True

    def __contains__(self, path) -> bool:
        return path in self._paths

    def __len__(self) -> int:
        return len(self._paths)


class DirectoryEntry(NamedTuple):
    """A directory to create in the overlay."""
    path: str


class FileEntry(NamedTuple):
    """A regular file copied into the overlay from the host."""
    path: str
    source: str


class SymlinkEntry(NamedTuple):
    """A symbolic link in the overlay."""
    path: str
    target: str


Entry = Union[DirectoryEntry, FileEntry, SymlinkEntry]


class ArchiveSink:
    """Destination of the serialized archive stream.

    Subclasses accept bytes through write() and release their resources in
    close(). abort() is used instead of close() when the archive is incomplete;
    anything written after abort() is discarded.
    """

    closed = False
    aborted = False

    def write(self, data) -> int:
        raise NotImplementedError

    def close(self):
        raise NotImplementedError

    def abort(self):
        self.aborted = True
        self.close()


class MemorySink(ArchiveSink):
    """Keeps the archive stream in memory."""

    def __init__(self):
        self._chunks: list[bytes] = []

    def write(self, data) -> int:
        if self.aborted:
            return len(data)
        if self.closed:
            raise ValueError("write to closed sink")
        self._chunks.append(bytes(data))
        return len(data)

    def close(self):
        self.closed = True

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)


class CompressorSink(ArchiveSink):
    """
    Feeds the archive stream to an external filesystem compressor.

    The compressor is started immediately with its stdin connected to a pipe,
    and reads the archive concurrently while it is being written. Writes block
    while the pipe is full. The compressor's stdout and stderr are inherited so
    its diagnostics reach the operator.
    """

    def __init__(self, output_path: StrPath, program: str = "sqfstar", extra_args: Iterable[str] = ("-all-root",)):
        """
        Start the compressor.

        Args:
            output_path: Path of the compressed image the compressor creates
            program: Compressor executable (default: sqfstar)
            extra_args: Arguments passed after the output path (default: -all-root)

        Raises:
            CompressorError: If the compressor cannot be started
        """
        self.output_path = Path(output_path)
        self.command = [program, str(self.output_path), *extra_args]
        self.bytes_written = 0
        self.returncode: Optional[int] = None

        try:
            self.process = subprocess.Popen(self.command, stdin=subprocess.PIPE)
        except OSError as e:
            raise CompressorError(f"Cannot start compressor '{program}': {e}") from e

    def write(self, data) -> int:
        if self.aborted:
            return len(data)
        if self.closed:
            raise ValueError("write to closed sink")
        try:
            self.process.stdin.write(data)
        except BrokenPipeError as e:
            self.abort()
            raise CompressorError(
                f"Compressor '{self.command[0]}' stopped reading input (exit status {self.returncode})"
            ) from e
        self.bytes_written += len(data)
        return len(data)

    def close(self):
        """
        Close the pipe and wait for the compressor to finish.

        Raises:
            CompressorError: If the compressor exits with a non-zero status or
                             did not consume the whole archive
        """
        if self.closed:
            return
        self.closed = True

        pipe_error = None
        try:
            self.process.stdin.close()
        except BrokenPipeError as e:
            pipe_error = e

        self.returncode = self.process.wait()
        if self.returncode != 0:
            raise CompressorError(f"Compressor '{self.command[0]}' failed with exit status {self.returncode}")
        if pipe_error is not None:
            raise CompressorError(f"Compressor '{self.command[0]}' exited before reading the whole archive") from pipe_error

    def abort(self):
        """Close the pipe and reap the compressor without checking its result."""
        self.aborted = True
        if self.closed:
            return
        self.closed = True
        try:
            self.process.stdin.close()
        except BrokenPipeError:
            # The caller is already failing; the compressor's status is kept in returncode
            pass
        self.returncode = self.process.wait()


class StreamAssembler:
    """
    Serializes overlay entries into a GNU tar stream written to a sink.

    Every write is keyed by its destination path: the first entry for a path
    is archived and any later entry for the same path is dropped, whatever
    source tree it came from. Directories, symlinks and generated files carry
    the session timestamp taken when the assembler was created; regular files
    keep their own modification time.
    """

    def __init__(self, sink: ArchiveSink, registry: Optional[EntryRegistry] = None,
                 clock: Optional[int] = None, verbose: bool = False):
        """
        Initialize the assembler.

        Args:
            sink: Destination of the archive bytes
            registry: Registry of written destination paths (default: a new one)
            clock: Session timestamp in seconds (default: current time)
            verbose: Whether to log every archived entry to stderr
        """
        self.sink = sink
        self.registry = registry if registry is not None else EntryRegistry()
        self.now = int(time.time()) if clock is None else int(clock)
        self.verbose = verbose
        self.written = 0
        self.duplicates = 0
        self._tar = tarfile.open(fileobj=sink, mode="w|", format=tarfile.GNU_FORMAT)
        self._closed = False

    def _log(self, message: str):
        if self.verbose:
            log_message(message)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is None:
            self.close()
        else:
            self.abort()
        return False

    def _claim(self, path: str) -> bool:
        if self.registry.claim(path):
            self.written += 1
            return True
        self.duplicates += 1
        self._log(f"Skipping already archived path: {path}")
        return False

    def _header(self, path: str, type_flag: bytes, mode: int, mtime: int) -> tarfile.TarInfo:
        info = tarfile.TarInfo(path)
        info.type = type_flag
        info.mode = mode
        info.mtime = mtime
        return info

    def write_directory(self, path: str) -> bool:
        """Archive a directory. Returns False if the path was already archived."""
        if not self._claim(path):
            return False
        self._tar.addfile(self._header(path, tarfile.DIRTYPE, 0o755, self.now))
        return True

    def write_file(self, path: str, source: StrPath) -> bool:
        """
        Archive a regular file copied from the host.

        Args:
            path: Destination path in the overlay
            source: Host file supplying content, size, mtime and permissions

        Returns:
            False if the path was already archived

        Raises:
            OSError: If the source cannot be opened or read
        """
        if not self._claim(path):
            return False
        with open(source, 'rb') as f:
            stat_info = os.fstat(f.fileno())
            info = self._header(path, tarfile.REGTYPE, normalize_permissions(stat_info.st_mode), int(stat_info.st_mtime))
            info.size = stat_info.st_size
            self._tar.addfile(info, f)
        self._log(f"Archived file: {source} -> {path} ({stat_info.st_size} bytes)")
        return True

    def write_symlink(self, path: str, target: str) -> bool:
        """Archive a symbolic link. Returns False if the path was already archived."""
        if not self._claim(path):
            return False
        info = self._header(path, tarfile.SYMTYPE, 0o777, self.now)
        info.linkname = target
        self._tar.addfile(info)
        return True

    def write_data(self, path: str, data: bytes, mode: int = 0o755) -> bool:
        """Archive a generated regular file. Returns False if the path was already archived."""
        if not self._claim(path):
            return False
        info = self._header(path, tarfile.REGTYPE, mode, self.now)
        info.size = len(data)
        self._tar.addfile(info, io.BytesIO(data))
        return True

    def write_entry(self, entry: Entry) -> bool:
        """Archive an entry produced by the tree walker."""
        if isinstance(entry, DirectoryEntry):
            return self.write_directory(entry.path)
        if isinstance(entry, FileEntry):
            return self.write_file(entry.path, entry.source)
        if isinstance(entry, SymlinkEntry):
            return self.write_symlink(entry.path, entry.target)
        raise TypeError(f"Unsupported entry type: {type(entry).__name__}")

    def close(self):
        """
        Finish the archive, then close the sink.

        The tar trailer must be written before the sink is closed, otherwise
        the compressor sees a truncated archive. If the trailer cannot be
        written the sink is aborted instead.
        """
        if self._closed:
            return
        self._closed = True
        try:
            self._tar.close()
        except BaseException:
            self.sink.abort()
            raise
        self.sink.close()

    def abort(self):
        """Stop without finishing the archive."""
        if self._closed:
            return
        self._closed = True
        self.sink.abort()


def rewrite_link_target(target: str, source_root: StrPath, dest_root: str) -> str:
    """
    Rewrite a symlink target found while walking a source tree.

    An absolute target inside the source tree is moved under the destination
    root, keeping its position relative to the tree. Relative targets and
    targets outside the tree are returned unchanged and may dangle once the
    tree is remapped.

    Examples:
        >>> rewrite_link_target("/src/lib/a.so", "/src", "/opt/app")
        '/opt/app/lib/a.so'
        >>> rewrite_link_target("/etc/passwd", "/src", "/opt/app")
        '/etc/passwd'
    """
    if not os.path.isabs(target):
        return target

    root = os.path.abspath(os.fspath(source_root))
    if target == root:
        return join_path(dest_root, "")
    if root != "/" and target.startswith(root + "/"):
        return join_path(dest_root, target[len(root):])
    return target


def iter_tree(source_root: StrPath, dest_root: str,
              on_error: Optional[Callable[[str, OSError], None]] = None) -> Iterator[Entry]:
    """
    Walk a source tree and yield its overlay entries.

    Traversal is depth-first with each directory yielded before its contents,
    in the order the filesystem lists them. Symlinks are never followed.
    Nodes other than directories, regular files and symlinks are skipped.

    Args:
        source_root: Directory to walk
        dest_root: Destination path of the source root in the overlay
        on_error: Called with (path, error) when a node cannot be examined; the
                  node is then skipped. If None, the error is raised.

    Yields:
        DirectoryEntry, FileEntry and SymlinkEntry values

    Raises:
        OSError: If a symlink target cannot be read
    """
    root = os.fspath(source_root)

    def report(path: str, error: OSError):
        if on_error is None:
            raise error
        on_error(path, error)

    def list_children(directory: str) -> list:
        try:
            with os.scandir(directory) as it:
                return list(it)
        except OSError as e:
            report(directory, e)
            return []

    yield DirectoryEntry(join_path(dest_root, ""))

    # One (remaining children, relative path) frame per open directory
    stack = [(iter(list_children(root)), "")]
    while stack:
        children, relative = stack[-1]
        child = next(children, None)
        if child is None:
            stack.pop()
            continue

        child_relative = posixpath.join(relative, child.name) if relative else child.name
        dest = join_path(dest_root, child_relative)

        try:
            is_symlink = child.is_symlink()
            is_dir = not is_symlink and child.is_dir(follow_symlinks=False)
            is_file = not is_symlink and not is_dir and child.is_file(follow_symlinks=False)
        except OSError as e:
            report(child.path, e)
            continue

        if is_dir:
            yield DirectoryEntry(dest)
            stack.append((iter(list_children(child.path)), child_relative))
        elif is_file:
            yield FileEntry(dest, child.path)
        elif is_symlink:
            target = os.readlink(child.path)
            yield SymlinkEntry(dest, rewrite_link_target(target, root, dest_root))


def walk_tree(source_root: StrPath, dest_root: str, assembler: StreamAssembler,
              strict: bool = False, verbose: bool = False) -> int:
    """
    Archive a whole source tree under a destination root.

    Args:
        source_root: Directory to add
        dest_root: Destination path of the directory in the overlay
        assembler: Assembler receiving the entries
        strict: Raise WalkError when a node cannot be examined instead of skipping it
        verbose: Log skipped nodes to stderr

    Returns:
        Number of nodes skipped because they could not be examined

    Raises:
        WalkError: If source_root is not a directory, or a node cannot be
                   examined in strict mode
    """
    if not os.path.isdir(source_root):
        raise WalkError(f"Source path is not a directory: {source_root}")

    skipped = 0

    def on_error(path: str, error: OSError):
        nonlocal skipped
        if strict:
            raise WalkError(f"Cannot read '{path}': {error}") from error
        skipped += 1
        if verbose:
            log_message(f"Skipping unreadable path: {path} ({error})")

    for entry in iter_tree(source_root, dest_root, on_error=on_error):
        assembler.write_entry(entry)

    return skipped


def quote_env_value(value: str) -> str:
    """
    Wrap a value in double quotes for a POSIX shell export line.

    Backslashes and double quotes are escaped so the line stays well formed.
    '$' and '`' are kept as is, so references such as $PATH still expand when
    the script is sourced.

    Examples:
        >>> quote_env_value("/opt/bin")
        '"/opt/bin"'
        >>> quote_env_value('say "hi"')
        '"say \\\\"hi\\\\""'
    """
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def build_env_script(env_vars: Iterable[tuple[str, str]]) -> bytes:
    """Render one export line per variable, in the order given."""
    lines = [f"export {key}={quote_env_value(value)}\n" for key, value in env_vars]
    return "".join(lines).encode('utf-8')


def inject_env_script(assembler: StreamAssembler, env_vars: Iterable[tuple[str, str]]) -> bool:
    """
    Add the environment script to the overlay.

    The script is sourced by the container runtime at startup. Its parent
    directories are written first; all three paths follow the usual
    first-writer-wins rule.

    Returns:
        False if no variables were given or the script path was already archived
    """
    env_vars = list(env_vars)
    if not env_vars:
        return False

    for directory in ENV_SCRIPT_DIRS:
        assembler.write_directory(directory)
    return assembler.write_data(ENV_SCRIPT_PATH, build_env_script(env_vars))


def clone_image(base: StrPath, output: StrPath, chunk_size: int = 16*1024*1024,
                progress_callback: Optional[Callable[[int, int], None]] = None) -> int:
    """
    Copy the base image to the output path byte for byte.

    Args:
        base: Base container image
        output: Destination path, created or truncated
        chunk_size: Size of chunks in bytes for copying (default: 16 MiB)
        progress_callback: Optional callable(bytes_copied, total_bytes)

    Returns:
        Number of bytes copied
    """
    total_bytes = os.path.getsize(base)
    bytes_copied = 0

    with open(base, 'rb') as src, open(output, 'wb') as dst:
        while True:
            data = src.read(chunk_size)
            if not data:
                break
            dst.write(data)
            bytes_copied += len(data)
            if progress_callback:
                progress_callback(bytes_copied, total_bytes)

    return bytes_copied


def iter_block_hashes(path: StrPath, block_size: int = 4096) -> Iterator[int]:
    """Yield the MurmurHash3 value of each block of a file."""
    with open(path, 'rb') as f:
        while True:
            block = f.read(block_size)
            if not block:
                break
            yield mmh3.hash(block, signed=False)


def verify_clone(base: StrPath, output: StrPath, block_size: int = 4096):
    """
    Check that a cloned image matches its base block by block.

    This is a sanity check of the fresh copy, not an integrity guarantee: both
    files are read back right after being written and will usually come from
    the page cache. It catches short or misdirected writes, and costs one
    extra read of each file.

    Raises:
        ContainerPatchError: If sizes or any block hash differ
    """
    base_size = os.path.getsize(base)
    output_size = os.path.getsize(output)
    if base_size != output_size:
        raise ContainerPatchError(f"Clone of '{base}' has {output_size} bytes, expected {base_size}")

    pairs = zip(iter_block_hashes(base, block_size), iter_block_hashes(output, block_size))
    for index, (base_hash, output_hash) in enumerate(pairs):
        if base_hash != output_hash:
            raise ContainerPatchError(f"Clone of '{base}' differs at offset {index * block_size}")


def read_primary_arch(image: StrPath) -> int:
    """
    Read the primary architecture code from a SIF global header.

    Returns:
        Architecture code as used by `sif add --partarch` (2 for amd64, ...)

    Raises:
        ContainerPatchError: If the file is not a SIF image or its architecture is unknown
    """
    with open(image, 'rb') as f:
        header = f.read(SIF_ARCH_OFFSET + SIF_ARCH_SIZE)

    if len(header) < SIF_ARCH_OFFSET + SIF_ARCH_SIZE or \
            header[SIF_MAGIC_OFFSET:SIF_MAGIC_OFFSET + len(SIF_MAGIC)] != SIF_MAGIC:
        raise ContainerPatchError(f"Not a SIF image: {image}")

    code = header[SIF_ARCH_OFFSET:SIF_ARCH_OFFSET + SIF_ARCH_SIZE].rstrip(b"\0")
    try:
        arch = int(code.decode('ascii'))
    except (UnicodeDecodeError, ValueError):
        raise ContainerPatchError(f"Malformed architecture field in SIF image: {image}")

    if arch not in SIF_ARCH_NAMES:
        raise ContainerPatchError(f"Unknown primary architecture {code!r} in SIF image: {image}")
    return arch


class SifPatcher:
    """Appends partitions to SIF images with the `sif add` command of singularity, apptainer or siftool."""

    def __init__(self, program: str = "singularity", verbose: bool = False):
        self.program = program
        self.verbose = verbose

    def _log(self, message: str):
        if self.verbose:
            log_message(message)

    def add_command(self, image: StrPath, partition: StrPath, arch: int) -> list[str]:
        """Build the command line appending an overlay partition to an image."""
        if os.path.basename(self.program).startswith("siftool"):
            command = [self.program, "add"]
        else:
            command = [self.program, "sif", "add"]
        return command + [
            "--datatype", str(SIF_DATATYPE_PARTITION),
            "--parttype", str(SIF_PARTTYPE_OVERLAY),
            "--partfs", str(SIF_PARTFS_SQUASHFS),
            "--partarch", str(arch),
            "--groupid", str(SIF_DEFAULT_GROUP),
            str(image),
            str(partition),
        ]

    def append_overlay(self, image: StrPath, partition: StrPath):
        """
        Append a SquashFS image as an overlay partition.

        The partition inherits the primary architecture of the image.

        Raises:
            ContainerPatchError: If the image is not a SIF image or the tool fails
        """
        arch = read_primary_arch(image)
        command = self.add_command(image, partition, arch)
        self._log(f"Appending overlay partition ({SIF_ARCH_NAMES[arch]}): {' '.join(command)}")

        try:
            result = subprocess.run(command, capture_output=True, text=True)
        except OSError as e:
            raise ContainerPatchError(f"Cannot run '{self.program}': {e}") from e

        if result.returncode != 0:
            output = (result.stderr.strip() or result.stdout.strip())
            raise ContainerPatchError(f"'{' '.join(command[:3])}' failed with exit status {result.returncode}: {output}")


class OverlayBuilder:
    """Builds an overlay image from host directories and adds it to a copy of a SIF image."""

    def __init__(self, base_image: Path, output_image: Path, sources: list[str],
                 rules: Optional[list[RemapRule]] = None, env_vars: Optional[list[tuple[str, str]]] = None,
                 temp_dir: Optional[str] = None, strict: bool = False, compressor: str = "sqfstar",
                 patcher: Optional[SifPatcher] = None, verbose: bool = False, copy_chunk_size: int = 16*1024*1024,
                 verify: bool = True):
        """
        Initialize the builder.

        Args:
            base_image: SIF image to clone
            output_image: Path of the patched clone
            sources: Host directories to add, in order
            rules: Remap rules applied to each source path (first match wins)
            env_vars: (key, value) pairs exported by the generated environment script
            temp_dir: Directory in which the temporary SquashFS image is created (default: system temp)
            strict: Whether unreadable nodes abort the run instead of being skipped
            compressor: Compressor executable reading a tar stream (default: sqfstar)
            patcher: Container patcher (default: SifPatcher using singularity)
            verbose: Whether to print timestamped progress messages to stderr
            copy_chunk_size: Size of chunks in bytes for cloning the base image (default: 16 MiB)
            verify: Whether to compare the clone with the base image before patching it
        """
        self.base_image = Path(base_image)
        self.output_image = Path(output_image)
        self.sources = list(sources)
        self.rules = list(rules or [])
        self.env_vars = list(env_vars or [])
        self.temp_dir = temp_dir
        self.strict = strict
        self.compressor = compressor
        self.patcher = patcher if patcher is not None else SifPatcher(verbose=verbose)
        self.verbose = verbose
        self.copy_chunk_size = copy_chunk_size
        self.verify = verify
        self.registry = EntryRegistry()
        self.skipped = 0

    def _log(self, message: str):
        """Print a timestamped message to stderr if verbose mode is enabled."""
        if self.verbose:
            log_message(message)

    def create_sink(self, overlay_path: Path) -> ArchiveSink:
        return CompressorSink(overlay_path, program=self.compressor)

    def build_overlay(self, overlay_path: Path):
        """
        Stream every source tree and the environment script into a SquashFS image.

        Returns only after the compressor has exited successfully.
        """
        self._log(f"Starting compressor '{self.compressor}' for {overlay_path}")
        sink = self.create_sink(overlay_path)

        with StreamAssembler(sink, registry=self.registry, verbose=self.verbose) as assembler:
            for source in self.sources:
                dest = remap(source, self.rules)
                self._log(f"Adding directory: {source} -> {dest}")
                self.skipped += walk_tree(source, dest, assembler, strict=self.strict, verbose=self.verbose)

            if self.env_vars:
                self._log(f"Adding environment script with {len(self.env_vars)} variables: {ENV_SCRIPT_PATH}")
                inject_env_script(assembler, self.env_vars)

        self._log(f"Archived {assembler.written} entries, {assembler.duplicates} duplicates skipped, "
                  f"{self.skipped} unreadable paths skipped")

    def patch_container(self, overlay_path: Path):
        """Clone the base image and append the overlay image to the clone."""
        self._log(f"Cloning base image: {self.base_image} -> {self.output_image}")

        def progress_callback(bytes_copied: int, total_bytes: int) -> None:
            """Report progress to stderr if verbose mode is enabled."""
            percent = (bytes_copied / total_bytes * 100) if total_bytes > 0 else 0
            sys.stderr.write(f"\r[{datetime.now().strftime('%Y-%m-%d %H:%M:%S')}] Cloning base image: {bytes_copied:,} / {total_bytes:,} bytes ({percent:.1f}%)")
            sys.stderr.flush()
            if bytes_copied == total_bytes:
                sys.stderr.write("\n")
                sys.stderr.flush()

        clone_image(self.base_image, self.output_image, chunk_size=self.copy_chunk_size,
                    progress_callback=progress_callback if self.verbose else None)

        if self.verify:
            self._log("Verifying cloned image")
            verify_clone(self.base_image, self.output_image)

        self.patcher.append_overlay(self.output_image, overlay_path)
        self._log("Overlay partition added")

    def build(self):
        """Run the whole build. The temporary directory is removed on every exit path."""
        with tempfile.TemporaryDirectory(dir=self.temp_dir) as tmp:
            overlay_path = Path(tmp) / OVERLAY_FILE_NAME
            self.build_overlay(overlay_path)
            self.patch_container(overlay_path)


def main():
    """Main entry point for dir2sif."""
    parser = argparse.ArgumentParser(
        description='Add host directories to a SIF container image as a SquashFS overlay partition',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Add /opt/tools to the image at the same location
  %(prog)s -b base.sif -o tools.sif -p /opt/tools

  # Add a build tree under /opt/app and export a variable
  %(prog)s -b base.sif -o app.sif -p build/out -r build/out:/opt/app -e APP_HOME=/opt/app

Remap rules are tried in the order given and the first rule whose FIND is a
prefix of the source path is used, even when a later rule matches more of it.
        """
    )

    parser.add_argument(
        '-b',
        dest='base',
        type=Path,
        metavar='PATH',
        help='Path to the base SIF image'
    )

    parser.add_argument(
        '-o',
        dest='output',
        type=Path,
        metavar='PATH',
        help='Path of the output image'
    )

    parser.add_argument(
        '-p',
        dest='paths',
        action='append',
        default=[],
        metavar='PATH',
        help='Directory to add to the image (can be used multiple times)'
    )

    parser.add_argument(
        '-r',
        dest='replacements',
        action='append',
        default=[],
        metavar='FIND:REPLACE',
        help='Replace the source path prefix FIND with REPLACE in the image (can be used multiple times, first match wins)'
    )

    parser.add_argument(
        '-e',
        dest='envs',
        action='append',
        default=[],
        metavar='KEY=VALUE',
        help='Environment variable to add to the image (can be used multiple times)'
    )

    parser.add_argument(
        '-t',
        dest='tmp_dir',
        default=None,
        metavar='DIR',
        help='Directory to temporarily place the SquashFS image in (default: system temp directory)'
    )

    parser.add_argument(
        '--strict',
        action='store_true',
        help='Fail when a path in a source directory cannot be read instead of skipping it'
    )

    parser.add_argument(
        '--no-verify',
        action='store_true',
        help='Skip comparing the cloned base image with the original before adding the overlay'
    )

    parser.add_argument(
        '--sqfstar',
        default='sqfstar',
        metavar='PROG',
        help='Program converting a tar stream on stdin to a SquashFS image (default: sqfstar)'
    )

    parser.add_argument(
        '--sif-tool',
        default='singularity',
        metavar='PROG',
        help='Program providing `sif add`: singularity, apptainer or siftool (default: singularity)'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose mode with timestamped progress messages to stderr'
    )

    args = parser.parse_args()

    if args.base is None:
        parser.error("base required (-b)")

    if args.output is None:
        parser.error("output required (-o)")

    if not args.paths:
        parser.error("at least one path must be specified (-p)")

    try:
        rules = [parse_remap_rule(text) for text in args.replacements]
        env_vars = [parse_env_var(text) for text in args.envs]
    except ValueError as e:
        parser.error(str(e))

    if not args.base.is_file():
        parser.error(f"Base image is not a file: {args.base}")

    if args.output.exists() and os.path.samefile(args.base, args.output):
        parser.error(f"Output image must differ from the base image: {args.output}")

    for path in args.paths:
        if not os.path.isdir(path):
            parser.error(f"Path is not a directory: {path}")

    if args.tmp_dir is not None and not os.path.isdir(args.tmp_dir):
        parser.error(f"Temporary directory does not exist: {args.tmp_dir}")

    builder = OverlayBuilder(
        args.base,
        args.output,
        args.paths,
        rules=rules,
        env_vars=env_vars,
        temp_dir=args.tmp_dir,
        strict=args.strict,
        compressor=args.sqfstar,
        patcher=SifPatcher(args.sif_tool, verbose=args.verbose),
        verbose=args.verbose,
        verify=not args.no_verify
    )

    try:
        builder.build()
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
