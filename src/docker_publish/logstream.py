"""Decoding and relaying of engine log streams.

The engine answers pull, build and push requests with a stream of JSON
records, one per line. Only the textual field of each record is of interest
to the CI log: ``stream`` for build output, ``status`` for pull and push
progress. Lines that are not JSON objects are dropped; an object without
the field (such as the trailing ``aux`` digest record of a push) relays an
empty entry.

Error records reported inside a stream (``{"error": ...}``) are collected
alongside, so the caller can decide whether they matter.
"""

from __future__ import annotations

import codecs
from collections.abc import Callable, Iterable, Iterator

from pydantic import BaseModel, ConfigDict, Field, ValidationError

LogSink = Callable[[str], None]


def stdout_sink(line: str) -> None:
    """Write a relayed log entry to stdout, one entry per line."""
    print(line, flush=True)


class BuildLogRecord(BaseModel):
    """A single record from the image build response.

    Attributes:
        stream: Standard output line from the build process
        error: Error message if this record reports a failure
    """

    model_config = ConfigDict(extra="ignore")

    stream: str | None = None
    error: str | None = None

    @property
    def text(self) -> str:
        return self.stream or ""


class PushLogRecord(BaseModel):
    """A single record from an image pull or push response.

    Attributes:
        status: Status message (e.g. ``Preparing``, ``Layer already exists``)
        error: Error message if this record reports a failure
    """

    model_config = ConfigDict(extra="ignore")

    status: str | None = None
    error: str | None = None

    @property
    def text(self) -> str:
        return self.status or ""


LogRecord = type[BuildLogRecord] | type[PushLogRecord]


class RelayResult(BaseModel):
    """Outcome of relaying one response stream.

    Attributes:
        relayed: Number of entries handed to the sink
        dropped: Number of lines that were not valid records
        errors: Error messages reported inside the stream, in order
    """

    relayed: int = Field(default=0, ge=0)
    dropped: int = Field(default=0, ge=0)
    errors: list[str] = Field(default_factory=list)


def iter_lines(chunks: Iterable[bytes | str]) -> Iterator[str]:
    """Re-split a stream of arbitrary chunks into lines.

    Chunk boundaries need not align with line or character boundaries. A
    trailing line without a newline terminator is still emitted.

    Args:
        chunks: Raw response chunks, as bytes or text

    Yields:
        Lines without their terminator
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    for chunk in chunks:
        if isinstance(chunk, bytes):
            chunk = decoder.decode(chunk)
        pending += chunk
        *lines, pending = pending.split("\n")
        for line in lines:
            yield line.rstrip("\r")
    pending += decoder.decode(b"", final=True)
    if pending:
        yield pending.rstrip("\r")


def relay(chunks: Iterable[bytes | str], record: LogRecord, sink: LogSink) -> RelayResult:
    """Relay the textual field of every valid record to ``sink``, in order.

    Args:
        chunks: Raw response chunks
        record: Record model selecting the textual field
        sink: Callable receiving each relayed entry

    Returns:
        RelayResult with counts and in-stream errors
    """
    result = RelayResult()
    for line in iter_lines(chunks):
        try:
            entry = record.model_validate_json(line)
        except ValidationError:
            result.dropped += 1
            continue
        sink(entry.text)
        result.relayed += 1
        if entry.error:
            result.errors.append(entry.error)
    return result
