"""Final document assembly and output.

Writes the joined Markdown document and, in debug mode, a JSON dump of
every job next to it:
- <output_filename>: completed jobs' content joined by the separator
- <stem>.jobs.json: per-job status, errors, metrics and provider payloads
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Optional

import orjson

from ..core.config import DEFAULT_OUTPUT_FILENAME, DEFAULT_SEPARATOR
from ..types.job import Job, JobStatus
from .. import __version__

if TYPE_CHECKING:
    from ..orchestration.orchestrator import RunResult

logger = logging.getLogger(__name__)


def unescape_separator(separator: Optional[str]) -> str:
    """Turn literal backslash-n sequences into newlines.

    An empty separator falls back to the default section break.
    """
    if not separator:
        return DEFAULT_SEPARATOR
    return separator.replace("\\n", "\n")


def join_document(jobs: Iterable[Job], separator: Optional[str]) -> str:
    """Join completed jobs' processed content in job order."""
    sections = [
        job.processed_content
        for job in jobs
        if job.status == JobStatus.COMPLETED and job.processed_content
    ]
    return unescape_separator(separator).join(sections)


def json_dumps(obj: Any) -> bytes:
    """Serialize object to JSON bytes using orjson."""
    return orjson.dumps(
        obj,
        option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS,
        default=_json_default,
    )


def _json_default(obj: Any) -> Any:
    """Default serializer for non-standard types."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if hasattr(obj, "__dict__"):
        return obj.__dict__
    raise TypeError(f"Cannot serialize {type(obj)}")


class DocumentWriter:
    """Writes run output to disk."""

    def __init__(
        self,
        output_dir: Path,
        output_filename: str = DEFAULT_OUTPUT_FILENAME,
        debug: bool = False,
    ):
        """Initialize the writer.

        Args:
            output_dir: Directory to write into.
            output_filename: Name of the Markdown document.
            debug: Also write the per-job JSON dump.
        """
        self._output_dir = output_dir
        self._output_filename = output_filename or DEFAULT_OUTPUT_FILENAME
        self._debug = debug

    @property
    def document_path(self) -> Path:
        """Path of the Markdown document."""
        return self._output_dir / self._output_filename

    @property
    def jobs_path(self) -> Path:
        """Path of the debug job dump."""
        return self._output_dir / f"{Path(self._output_filename).stem}.jobs.json"

    def write(self, result: "RunResult") -> Path:
        """Write the document (and debug dump) for a run.

        Args:
            result: Finished run.

        Returns:
            Path to the written document.
        """
        self._output_dir.mkdir(parents=True, exist_ok=True)
        self.document_path.write_text(result.document, encoding="utf-8")
        logger.info(f"Wrote {len(result.document)} characters to {self.document_path}")

        if self._debug:
            manifest = {
                "tool_version": __version__,
                "started_at": result.started_at,
                "completed_at": result.completed_at,
                "aborted": result.aborted,
                "token_usage": result.token_usage,
                "output_stats": result.output_stats,
                "jobs": [job.model_dump(mode="json") for job in result.jobs],
            }
            self.jobs_path.write_bytes(json_dumps(manifest))
            logger.debug(f"Wrote job dump to {self.jobs_path}")

        return self.document_path
