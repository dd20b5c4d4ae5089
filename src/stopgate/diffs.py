from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Protocol

from stopgate.results import Outcome

LOGGER = logging.getLogger(__name__)

DIFF_HEADER_PREFIX = "diff --git "
# Git quotes paths with special or non-ASCII bytes as C strings with octal escapes.
QUOTED_B_PATH_RE = re.compile(r' ("b/(?:[^"\\]|\\.)*")$')
GIT_ESCAPES = {"a": "\a", "b": "\b", "t": "\t", "n": "\n", "v": "\v", "f": "\f", "r": "\r"}
OCTAL_DIGITS = "01234567"

DOC_SUFFIXES = (".md", ".markdown", ".rst", ".txt")
# Private journal entries and the vector embeddings derived from them.
JOURNAL_DIR = ".private-journal/"
EMBEDDING_SUFFIX = ".embedding"

# Below this size a diff is sent to the reviewer as-is; summarizing it would
# cost more than it saves.
SMALL_DIFF_THRESHOLD = 5_000
# A chunk is closed at the next file boundary once it grows past this size.
CHUNK_TARGET_SIZE = 8_000
# Upper bound on concurrent summarizer calls, to stay under rate limits.
SUMMARY_CONCURRENCY = 5
# Size of the raw diff used when every chunk summary failed.
FALLBACK_DIFF_CAP = 10_000


@dataclass(frozen=True)
class DiffBundle:
    full_diff: str = ""
    filtered_diff: str = ""
    has_doc_changes: bool = False
    doc_only_changes: bool = False
    doc_files: tuple[str, ...] = ()
    code_files: tuple[str, ...] = ()


@dataclass
class CompressionResult:
    text: str
    compressed: bool = False
    original_size: int = 0
    chunk_count: int = 0
    failed_chunks: int = 0
    summaries: list[str] = field(default_factory=list)

    @property
    def ratio(self) -> float:
        if not self.original_size:
            return 0.0
        return 1 - len(self.text) / self.original_size


class Summarizer(Protocol):
    def summarize(self, chunk: str) -> str: ...


def is_doc_path(path: str) -> bool:
    if path.endswith(DOC_SUFFIXES):
        return True
    if path.startswith("docs/") or "/docs/" in path:
        return True
    if "README" in path:
        return True
    if path.startswith(JOURNAL_DIR) or f"/{JOURNAL_DIR}" in path:
        return True
    return path.endswith(EMBEDDING_SUFFIX)


def classify_path(path: str) -> str:
    return "doc" if is_doc_path(path) else "code"


def unquote_git_path(quoted: str) -> str:
    body = quoted[1:-1] if len(quoted) >= 2 and quoted[0] == quoted[-1] == '"' else quoted
    out = bytearray()
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            octal = body[i + 1 : i + 4]
            if len(octal) == 3 and all(c in OCTAL_DIGITS for c in octal):
                out.append(int(octal, 8) & 0xFF)
                i += 4
                continue
            nxt = body[i + 1]
            out.extend(GIT_ESCAPES.get(nxt, nxt).encode("utf-8"))
            i += 2
            continue
        out.extend(ch.encode("utf-8"))
        i += 1
    return out.decode("utf-8", errors="replace")


def diff_header_path(line: str) -> str | None:
    """Destination path of a ``diff --git`` header, or None if unparsable."""
    if not line.startswith(DIFF_HEADER_PREFIX):
        return None
    rest = line[len(DIFF_HEADER_PREFIX) :]
    quoted = QUOTED_B_PATH_RE.search(rest)
    if quoted:
        return unquote_git_path(quoted.group(1))[len("b/") :]
    # Unrenamed files repeat the same path on both sides.
    half = (len(rest) - 1) // 2
    if rest.startswith("a/") and rest[half : half + 3] == " b/" and rest[2:half] == rest[half + 3 :]:
        return rest[half + 3 :]
    idx = rest.rfind(" b/")
    if idx == -1 or not rest[idx + 3 :]:
        return None
    return rest[idx + 3 :]


def filter_diff(full_diff: str) -> DiffBundle:
    """Drop documentation files from a unified diff.

    Lines before the first file header are kept. Each ``diff --git`` header
    reclassifies the current file; every line of a documentation file,
    header included, is dropped.
    """
    if not full_diff:
        return DiffBundle()

    kept: list[str] = []
    doc_files: list[str] = []
    code_files: list[str] = []
    skip_current = False
    for line in full_diff.split("\n"):
        if line.startswith(DIFF_HEADER_PREFIX):
            path = diff_header_path(line)
            if path is None:
                # Unparsable headers count as code.
                LOGGER.warning("Could not parse diff header, treating as code: %s", line)
                path = line[len(DIFF_HEADER_PREFIX) :]
                skip_current = False
            else:
                skip_current = is_doc_path(path)
            if skip_current:
                doc_files.append(path)
                LOGGER.debug("Filtering out file from review: %s", path)
            else:
                code_files.append(path)
        if not skip_current:
            kept.append(line)

    bundle = DiffBundle(
        full_diff=full_diff,
        filtered_diff="\n".join(kept) if code_files else "",
        has_doc_changes=bool(doc_files),
        doc_only_changes=bool(doc_files) and not code_files,
        doc_files=tuple(doc_files),
        code_files=tuple(code_files),
    )
    LOGGER.debug(
        "Diff filtering: full=%d filtered=%d docs=%d code=%d",
        len(full_diff),
        len(bundle.filtered_diff),
        len(doc_files),
        len(code_files),
    )
    return bundle


def split_diff_into_chunks(diff: str, max_chunk_size: int = CHUNK_TARGET_SIZE) -> list[str]:
    """Split a diff into chunks that only ever start at a file header."""
    chunks: list[str] = []
    current: list[str] = []
    current_size = 0
    for line in diff.split("\n"):
        if line.startswith(DIFF_HEADER_PREFIX) and current and current_size > max_chunk_size:
            chunks.append("\n".join(current))
            current = []
            current_size = 0
        current.append(line)
        current_size += len(line) + 1
    if current:
        chunks.append("\n".join(current))
    return chunks


def summarize_chunk(summarizer: Summarizer, chunk: str) -> Outcome[str]:
    try:
        return Outcome.success(summarizer.summarize(chunk))
    except Exception as exc:  # noqa: BLE001
        return Outcome.failure(exc)


def failed_chunk_placeholder(index: int) -> str:
    return f"• Failed to summarize chunk {index + 1}"


def compress_diff(
    diff: str,
    summarizer: Summarizer,
    *,
    small_threshold: int = SMALL_DIFF_THRESHOLD,
    chunk_size: int = CHUNK_TARGET_SIZE,
    concurrency: int = SUMMARY_CONCURRENCY,
    fallback_cap: int = FALLBACK_DIFF_CAP,
) -> CompressionResult:
    if len(diff) < small_threshold:
        LOGGER.debug("Diff is small, skipping compression (%d chars)", len(diff))
        return CompressionResult(text=diff, original_size=len(diff))

    LOGGER.info("Starting diff compression (%d chars)", len(diff))
    chunks = split_diff_into_chunks(diff, chunk_size)
    summaries: list[str] = [""] * len(chunks)
    failed = 0
    with ThreadPoolExecutor(max_workers=max(1, concurrency)) as executor:
        for start in range(0, len(chunks), concurrency):
            batch = chunks[start : start + concurrency]
            LOGGER.debug("Summarizing batch %d (%d chunks)", start // concurrency, len(batch))
            futures = [executor.submit(summarize_chunk, summarizer, chunk) for chunk in batch]
            for offset, future in enumerate(futures):
                index = start + offset
                outcome = future.result()
                if outcome.ok and outcome.value is not None:
                    summaries[index] = outcome.value
                else:
                    LOGGER.warning("Failed to summarize chunk %d: %s", index + 1, outcome.error)
                    summaries[index] = failed_chunk_placeholder(index)
                    failed += 1

    if failed == len(chunks):
        LOGGER.warning("All %d chunks failed to summarize, using truncated diff", failed)
        return CompressionResult(
            text=diff[:fallback_cap],
            original_size=len(diff),
            chunk_count=len(chunks),
            failed_chunks=failed,
        )

    combined = "\n\n".join(
        f"### Change Set {i + 1}:\n{summary}" for i, summary in enumerate(summaries)
    )
    result = CompressionResult(
        text=combined,
        compressed=True,
        original_size=len(diff),
        chunk_count=len(chunks),
        failed_chunks=failed,
        summaries=summaries,
    )
    LOGGER.info(
        "Diff compression complete: %d -> %d chars (%.1f%%), %d chunks, %d failed",
        len(diff),
        len(combined),
        result.ratio * 100,
        len(chunks),
        failed,
    )
    return result
