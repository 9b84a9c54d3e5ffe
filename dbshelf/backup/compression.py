"""
Streaming compression handlers for dump artifacts.

Supports:
- none: identity
- gz: gzip stream
- zstd: Zstandard stream
- xz: LZMA (xz container) stream
- zip: single-entry zip archive

Writers are selected by the configured compression; readers are selected by
the artifact's own trailing extension so restores never depend on the
current configuration.
"""

import gzip
import lzma
import zipfile
from typing import BinaryIO, Callable, Tuple, Union

import zstandard

from dbshelf.errors import CompressionError, FilesystemError
from dbshelf.models import Compression


CHUNK_SIZE = 64 * 1024

_EXTENSIONS = {
    Compression.NONE: '',
    Compression.GZIP: '.gz',
    Compression.ZSTD: '.zst',
    Compression.XZ: '.xz',
    Compression.ZIP: '.zip',
}

_LABELS = {
    Compression.NONE: '',
    Compression.GZIP: 'gzip',
    Compression.ZSTD: 'zstd',
    Compression.XZ: 'xz',
    Compression.ZIP: 'zip',
}

# Errors a decoder can raise on corrupt or truncated input
DECODE_ERRORS = (OSError, EOFError, lzma.LZMAError, zstandard.ZstdError, zipfile.BadZipFile)


def parse_compression(value: Union[str, Compression, None]) -> Compression:
    """
    Resolve a compression identifier.

    Raises:
        CompressionError: If the identifier is unknown
    """
    if isinstance(value, Compression):
        return value
    try:
        return Compression(value or 'none')
    except ValueError:
        raise CompressionError(
            f"Invalid compression format: {value}. "
            f"Valid options: {[c.value for c in Compression]}"
        )


def compression_extension(compression: Union[str, Compression]) -> str:
    """Filename suffix added by a compression ('' for none)."""
    return _EXTENSIONS[parse_compression(compression)]


def compression_label(compression: Union[str, Compression]) -> str:
    """Human readable codec name, '' when uncompressed."""
    return _LABELS[parse_compression(compression)]


def detect_compression(filename: str) -> Compression:
    """
    Infer the codec from a filename's trailing extension.

    Anything without a known compression suffix is treated as uncompressed.
    """
    lowered = filename.lower()
    for compression, ext in _EXTENSIONS.items():
        if ext and lowered.endswith(ext):
            return compression
    return Compression.NONE


def _noop():
    pass


def _finalizer(*closables) -> Callable[[], None]:
    """
    Close each object once, in order; later calls do nothing.

    Every object is closed even if an earlier close fails; the first
    failure is raised afterwards.
    """
    state = {'done': False}

    def finalize():
        if state['done']:
            return
        state['done'] = True
        error = None
        for closable in closables:
            try:
                closable.close()
            except Exception as e:
                if error is None:
                    error = e
        if error is not None:
            raise error

    return finalize


def open_writer(
    fileobj: BinaryIO,
    compression: Union[str, Compression],
    inner_filename: str
) -> Tuple[BinaryIO, Callable[[], None]]:
    """
    Wrap an open binary file in an encoder.

    The returned ``finalize`` must be called exactly once after the last
    write and before ``fileobj`` is closed; it writes the codec trailer
    (gzip/zstd/xz) or the zip central directory. It never closes
    ``fileobj`` itself.

    Args:
        fileobj: Destination file opened for binary writing
        compression: Compression identifier
        inner_filename: Entry name used by the zip codec

    Returns:
        (writer, finalize)

    Raises:
        CompressionError: If the compression is unknown
    """
    compression = parse_compression(compression)

    if compression is Compression.NONE:
        return fileobj, _noop

    if compression is Compression.GZIP:
        writer = gzip.GzipFile(filename=inner_filename, mode='wb', fileobj=fileobj)
        return writer, _finalizer(writer)

    if compression is Compression.ZSTD:
        writer = zstandard.ZstdCompressor().stream_writer(fileobj, closefd=False)
        return writer, _finalizer(writer)

    if compression is Compression.XZ:
        writer = lzma.LZMAFile(fileobj, mode='wb', format=lzma.FORMAT_XZ)
        return writer, _finalizer(writer)

    if compression is Compression.ZIP:
        # Zip is an archive, not a stream: one entry holding the dump
        archive = zipfile.ZipFile(fileobj, mode='w', compression=zipfile.ZIP_DEFLATED)
        entry = archive.open(inner_filename, mode='w', force_zip64=True)
        return entry, _finalizer(entry, archive)

    raise CompressionError(f"Unsupported compression: {compression}")


def open_reader(path: str) -> Tuple[BinaryIO, Callable[[], None]]:
    """
    Open a backup artifact for decoded reading.

    The codec is chosen from the file's own extension. Zip archives are
    opened as random-access containers and must hold at least one entry;
    only the first entry is read.

    Args:
        path: Local path of the artifact

    Returns:
        (reader, cleanup)

    Raises:
        FilesystemError: If the file cannot be opened
        CompressionError: If the archive is empty or corrupt
    """
    compression = detect_compression(path)

    if compression is Compression.ZIP:
        try:
            archive = zipfile.ZipFile(path, mode='r')
        except zipfile.BadZipFile as e:
            raise CompressionError(f"Failed to open zip archive: {e}")
        except OSError as e:
            raise FilesystemError(f"Failed to open backup file: {e}")

        entries = archive.infolist()
        if not entries:
            archive.close()
            raise CompressionError("zip archive is empty")

        try:
            entry = archive.open(entries[0], mode='r')
        except (zipfile.BadZipFile, OSError, RuntimeError) as e:
            archive.close()
            raise CompressionError(f"Failed to open zip entry {entries[0].filename}: {e}")
        return entry, _finalizer(entry, archive)

    try:
        fileobj = open(path, 'rb')
    except OSError as e:
        raise FilesystemError(f"Failed to open backup file: {e}")

    if compression is Compression.NONE:
        return fileobj, _finalizer(fileobj)

    try:
        if compression is Compression.GZIP:
            reader = gzip.GzipFile(fileobj=fileobj, mode='rb')
        elif compression is Compression.ZSTD:
            reader = zstandard.ZstdDecompressor().stream_reader(
                fileobj, read_across_frames=True, closefd=False
            )
        else:
            reader = lzma.LZMAFile(fileobj, mode='rb')
    except DECODE_ERRORS as e:
        fileobj.close()
        raise CompressionError(f"Failed to create {compression_label(compression)} reader: {e}")

    return reader, _finalizer(reader, fileobj)


def copy_stream(src: BinaryIO, dst: BinaryIO, chunk_size: int = CHUNK_SIZE) -> int:
    """
    Copy ``src`` into ``dst`` chunk by chunk.

    Errors raised while reading (decoding) are reported as CompressionError;
    errors raised while writing propagate unchanged.

    Returns:
        Number of bytes copied
    """
    total = 0
    while True:
        try:
            chunk = src.read(chunk_size)
        except DECODE_ERRORS as e:
            raise CompressionError(f"Failed to decode backup data: {e}")
        if not chunk:
            break
        dst.write(chunk)
        total += len(chunk)
    return total
