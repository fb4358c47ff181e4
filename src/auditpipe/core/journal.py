"""
Append-only queue journal.

Every queue mutation that must survive a restart is appended as one
binary record:

    [4 bytes: length][JSON record][4 bytes: CRC32 of the record]

Records are ``{"op": "put", "job": {...}}`` (job created or rescheduled)
and ``{"op": "del", "id": ...}`` (job completed or finalised). Replay
folds them into the set of live jobs; compaction rewrites the file with
one ``put`` per live job.
"""

import asyncio
import json
import os
import struct
import zlib
from pathlib import Path
from typing import Any, Dict, Iterable

import structlog
from aiofiles import open as aio_open

from .exceptions import QueueUnavailableError

logger = structlog.get_logger(__name__)

JOURNAL_FILENAME = "queue.journal"


def encode_record(record: Dict[str, Any]) -> bytes:
    data = json.dumps(record, separators=(",", ":")).encode("utf-8")
    return struct.pack("<I", len(data)) + data + struct.pack("<I", zlib.crc32(data))


class QueueJournal:
    """
    Durable log of queue jobs.

    Features:
    - Binary length-prefixed records with checksums
    - Corrupt records skipped on replay, truncated tails ignored
    - Atomic compaction through a temporary file
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.path = self.directory / JOURNAL_FILENAME
        self._write_lock = asyncio.Lock()

    def ensure_directory(self) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Error creating journal directory", directory=str(self.directory), error=str(e))
            raise QueueUnavailableError(
                "Error creating journal directory",
                details={"directory": str(self.directory)},
            ) from e

    async def append(self, record: Dict[str, Any]) -> None:
        """Append one record; raises QueueUnavailableError on I/O failure."""
        payload = encode_record(record)
        async with self._write_lock:
            try:
                async with aio_open(self.path, "ab") as f:
                    await f.write(payload)
            except OSError as e:
                logger.error("Journal append failed", path=str(self.path), error=str(e))
                raise QueueUnavailableError("Journal append failed", details={"error": str(e)}) from e

    async def put(self, job: Dict[str, Any]) -> None:
        await self.append({"op": "put", "job": job})

    async def delete(self, job_id: str) -> None:
        await self.append({"op": "del", "id": job_id})

    def replay(self) -> Dict[str, Dict[str, Any]]:
        """
        Fold the journal into the live job set.

        Returns:
            Mapping of job id to the last written job state
        """
        jobs: Dict[str, Dict[str, Any]] = {}
        if not self.path.exists():
            return jobs

        skipped = 0
        with open(self.path, "rb") as f:
            while True:
                length_bytes = f.read(4)
                if not length_bytes:
                    break
                if len(length_bytes) != 4:
                    logger.warning("Truncated journal record length", path=str(self.path))
                    break

                length = struct.unpack("<I", length_bytes)[0]
                data = f.read(length)
                if len(data) != length:
                    logger.warning("Incomplete journal record", path=str(self.path))
                    break

                checksum_bytes = f.read(4)
                if len(checksum_bytes) != 4:
                    logger.warning("Missing journal checksum", path=str(self.path))
                    break

                checksum = struct.unpack("<I", checksum_bytes)[0]
                if checksum != zlib.crc32(data):
                    skipped += 1
                    logger.error("Journal checksum mismatch", path=str(self.path))
                    continue

                try:
                    record = json.loads(data.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError) as e:
                    skipped += 1
                    logger.error("Failed to parse journal record", error=str(e))
                    continue

                if record.get("op") == "put":
                    job = record["job"]
                    jobs[job["id"]] = job
                elif record.get("op") == "del":
                    jobs.pop(record.get("id"), None)

        logger.info("Journal replayed", live_jobs=len(jobs), skipped_records=skipped)
        return jobs

    async def compact(self, jobs: Iterable[Dict[str, Any]]) -> None:
        """Rewrite the journal so it holds exactly ``jobs``."""
        tmp_path = self.path.with_suffix(".compact")
        async with self._write_lock:
            # Snapshot under the lock so no append lands between snapshot and replace
            payload = b"".join(encode_record({"op": "put", "job": job}) for job in jobs)
            try:
                async with aio_open(tmp_path, "wb") as f:
                    await f.write(payload)
                os.replace(tmp_path, self.path)
            except OSError as e:
                logger.error("Journal compaction failed", path=str(self.path), error=str(e))
                raise QueueUnavailableError("Journal compaction failed", details={"error": str(e)}) from e

    def ping(self) -> bool:
        """True when the journal directory exists and is writable."""
        return self.directory.is_dir() and os.access(self.directory, os.W_OK)

    def size_bytes(self) -> int:
        return self.path.stat().st_size if self.path.exists() else 0
