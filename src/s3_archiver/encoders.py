# src/s3_archiver/encoders.py

"""
Archive encoders that write ZIP or TAR containers to a forward-only sink.

Each encoder accepts one named entry at a time and writes it straight through
to the sink (normally an ArchivePipe), so the archive is never materialised
as a whole. A counting writer in front of the sink tracks the bytes emitted.
"""

import io
import logging
import tarfile
import time
import zipfile
from datetime import datetime
from tempfile import SpooledTemporaryFile
from typing import BinaryIO, Protocol, cast

from .exceptions import ArchiveEncodeError, ArchiverError
from .schemas import ArchiveFormat
from .streams import ConduitClosedError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_SPOOL_THRESHOLD = 64 * 1024 * 1024

# ZIP timestamps cannot predate the DOS epoch.
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


class ByteSink(Protocol):
    def write(self, data: bytes) -> int: ...


# --- Helpers ---
def _spool_stream(
    stream: BinaryIO, spool_threshold: int, chunk_size: int
) -> tuple[BinaryIO, int]:
    """
    Read *stream* into a SpooledTemporaryFile (in-RAM up to *spool_threshold*,
    then /tmp on disk) while counting bytes.

    Returns (file_like, actual_size), rewound for reading.
    """
    tmp = SpooledTemporaryFile(max_size=spool_threshold, mode="w+b")

    copied = 0
    try:
        for chunk in iter(lambda: stream.read(chunk_size), b""):
            tmp.write(chunk)
            copied += len(chunk)
    except BaseException:
        tmp.close()
        raise

    tmp.seek(0)  # rewind for reading
    return cast(BinaryIO, tmp), copied


class CountingWriter(io.RawIOBase):
    """
    Proxy object that forwards everything written to a sink while counting
    the bytes that pass through.
    """

    def __init__(self, sink: ByteSink):
        super().__init__()
        self._sink: ByteSink | None = sink
        self.count = 0

    def write(self, data) -> int:
        view = memoryview(data).cast("B")
        if self._sink is not None:
            self._sink.write(view)
            self.count += len(view)
        return len(view)

    def detach_sink(self) -> None:
        """Stop forwarding; later writes are accepted and dropped."""
        self._sink = None

    def tell(self) -> int:
        return self.count

    def writable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass  # The encoder owns the sink's lifecycle.


class ArchiveEncoder:
    """
    Base class for the streaming container writers.

    Subclasses implement ``_write_entry`` and ``_write_trailer``; this class
    enforces ordering rules and maps container failures to
    ArchiveEncodeError.
    """

    format: ArchiveFormat

    def __init__(
        self,
        sink: ByteSink,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        spool_threshold: int = DEFAULT_SPOOL_THRESHOLD,
    ):
        self._writer = CountingWriter(sink)
        self._chunk_size = chunk_size
        self._spool_threshold = spool_threshold
        self._finalized = False
        self.entry_count = 0

    @property
    def bytes_written(self) -> int:
        return self._writer.count

    def append(
        self,
        name: str,
        stream: BinaryIO,
        size: int | None = None,
        modified: datetime | None = None,
    ) -> None:
        """Write one entry, draining *stream* completely before returning."""
        if self._finalized:
            raise ArchiveEncodeError(
                "append after finalize", context={"entry_name": name}
            )
        try:
            self._write_entry(name, stream, size, modified)
        except (ArchiverError, ConduitClosedError):
            raise
        except (zipfile.BadZipFile, zipfile.LargeZipFile, tarfile.TarError, OSError, ValueError) as e:
            raise ArchiveEncodeError(
                f"failed to add entry: {e}",
                context={"entry_name": name, "format": self.format.value},
            ) from e
        self.entry_count += 1
        logger.debug(
            "Appended archive entry",
            extra={
                "entry_name": name,
                "entry_index": self.entry_count,
                "bytes_written": self.bytes_written,
            },
        )

    def finalize(self) -> None:
        """Write trailing container metadata. No bytes are produced afterwards."""
        if self._finalized:
            raise ArchiveEncodeError("finalize called twice")
        try:
            self._write_trailer()
        except ConduitClosedError:
            raise
        except (zipfile.BadZipFile, zipfile.LargeZipFile, tarfile.TarError, OSError, ValueError) as e:
            raise ArchiveEncodeError(
                f"failed to finalize archive: {e}",
                context={"format": self.format.value},
            ) from e
        self._finalized = True
        logger.debug(
            "Archive finalized",
            extra={"entries": self.entry_count, "bytes_written": self.bytes_written},
        )

    def discard(self) -> None:
        """
        Release the container after a failed run without emitting any more
        bytes. Idempotent; a no-op once the archive has been finalized.
        """
        if self._finalized:
            return
        self._finalized = True
        self._writer.detach_sink()
        try:
            self._write_trailer()
        except (zipfile.BadZipFile, zipfile.LargeZipFile, tarfile.TarError, OSError, ValueError) as e:
            logger.debug(
                "Ignoring error while discarding archive",
                extra={"format": self.format.value, "reason": str(e)},
            )
        logger.debug(
            "Archive discarded",
            extra={"entries": self.entry_count, "bytes_written": self.bytes_written},
        )

    def _write_entry(
        self, name: str, stream: BinaryIO, size: int | None, modified: datetime | None
    ) -> None:
        raise NotImplementedError

    def _write_trailer(self) -> None:
        raise NotImplementedError


class ZipArchiveEncoder(ArchiveEncoder):
    """ZIP over a non-seekable sink, using data descriptors for each entry."""

    format = ArchiveFormat.ZIP

    def __init__(self, sink: ByteSink, **kwargs):
        super().__init__(sink, **kwargs)
        self._zip = zipfile.ZipFile(
            cast(BinaryIO, self._writer),
            mode="w",
            compression=zipfile.ZIP_DEFLATED,
            allowZip64=True,
        )

    def _write_entry(self, name, stream, size, modified):
        if modified is not None:
            date_time = max(modified.timetuple()[:6], _ZIP_EPOCH)
        else:
            date_time = time.localtime(time.time())[:6]
        zinfo = zipfile.ZipInfo(name, date_time=date_time)
        zinfo.compress_type = zipfile.ZIP_DEFLATED
        zinfo.external_attr = 0o644 << 16
        if size is not None:
            zinfo.file_size = size

        with self._zip.open(zinfo, mode="w", force_zip64=size is None) as dest:
            for chunk in iter(lambda: stream.read(self._chunk_size), b""):
                dest.write(chunk)

    def _write_trailer(self):
        self._zip.close()


class TarArchiveEncoder(ArchiveEncoder):
    """Uncompressed PAX tar written in stream mode."""

    format = ArchiveFormat.TAR

    def __init__(self, sink: ByteSink, **kwargs):
        super().__init__(sink, **kwargs)
        self._tar = tarfile.open(
            mode="w|",
            fileobj=cast(BinaryIO, self._writer),
            format=tarfile.PAX_FORMAT,
        )

    def _write_entry(self, name, stream, size, modified):
        spooled = None
        if size is None:
            # Tar headers carry the size up front.
            logger.debug("Spooling entry of unknown size.", extra={"entry_name": name})
            spooled, size = _spool_stream(stream, self._spool_threshold, self._chunk_size)
            stream = spooled

        tarinfo = tarfile.TarInfo(name=name)
        tarinfo.size = size
        tarinfo.mode = 0o644
        tarinfo.mtime = int(modified.timestamp() if modified is not None else time.time())
        tarinfo.uid = tarinfo.gid = 0
        tarinfo.uname = tarinfo.gname = "root"

        try:
            self._tar.addfile(tarinfo, fileobj=stream)
        finally:
            if spooled is not None:
                spooled.close()

    def _write_trailer(self):
        self._tar.close()


_ENCODERS: dict[ArchiveFormat, type[ArchiveEncoder]] = {
    ArchiveFormat.ZIP: ZipArchiveEncoder,
    ArchiveFormat.TAR: TarArchiveEncoder,
}


def create_encoder(
    archive_format: ArchiveFormat | str,
    sink: ByteSink,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    spool_threshold: int = DEFAULT_SPOOL_THRESHOLD,
) -> ArchiveEncoder:
    """Build the encoder for *archive_format*; unknown formats get ZIP."""
    encoder_cls = _ENCODERS[ArchiveFormat.parse(archive_format)]
    return encoder_cls(sink, chunk_size=chunk_size, spool_threshold=spool_threshold)
