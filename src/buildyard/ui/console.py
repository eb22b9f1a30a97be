"""Console output formatting for the buildyard CLI."""

from __future__ import annotations

import logging
import sys
from typing import Iterable, Optional

from ..model import JobReport, JobState, RunSummary

_STATE_LABELS = {
    JobState.SUCCEEDED: "SUCCESS",
    JobState.FAILED: "FAILED",
    JobState.SKIPPED: "SKIPPED",
    JobState.ABORTED: "ABORTED",
}


class Console:
    """Everything the CLI prints to the terminal goes through here."""

    def __init__(self, debug: bool = False):
        """
        Args:
            debug: If True, show DEBUG log records and stack traces
        """
        self.debug = debug

    def configure_logging(self) -> None:
        """Route `buildyard` log records to stderr."""
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s", "%H:%M:%S"))
        root = logging.getLogger("buildyard")
        root.handlers[:] = [handler]
        root.setLevel(logging.DEBUG if self.debug else logging.INFO)
        root.propagate = False

    def print_header(self, title: str) -> None:
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        submit: str,
        repository: str,
        targets: Iterable[str],
        job_count: int,
        repo_hash: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Submit: {submit}")
        print(f"Repository: {repository}" + (f" @ {repo_hash[:12]}" if repo_hash else ""))
        print(f"Targets: {', '.join(targets) or '(all)'}")
        print(f"Jobs: {job_count}")
        print()

    def print_job(self, job: JobReport) -> None:
        label = _STATE_LABELS.get(job.state, job.state.value.upper())
        line = f"  {job.package}: {label}"
        if job.cached:
            line += " (cached)"
        elif job.endpoint:
            line += f" on {job.endpoint}"
        print(line)

        if job.state is JobState.SKIPPED and job.skipped_because is not None:
            print(f"    because {job.skipped_because} failed")
        if job.state is JobState.FAILED:
            print(f"    {job.error_kind}: {job.error_message}")
            if job.log_tail:
                print("    last output:")
                for tail in job.log_tail:
                    print(f"    | {tail}")
        if self.debug:
            for p in job.phases:
                print(f"    {p.phase}: {p.status.value} exit={p.exit_code} {p.duration:.1f}s")
            for digest in job.artifacts:
                print(f"    artifact {digest}")

    def print_results(self, summary: RunSummary) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print(f"RESULTS ({summary.outcome.value})")
        print("=" * 40)
        for job in summary.jobs:
            self.print_job(job)

        counts = ", ".join(f"{n} {state}" for state, n in summary.counts().items() if n)
        print(f"\n{counts}")
        duration = (summary.finished_at - summary.started_at).total_seconds()
        print(f"Duration: {duration:.1f}s")
        for w in summary.warnings:
            print(f"WARNING: {w}", file=sys.stderr)

    def print_table(self, header: Iterable[str], rows: Iterable[Iterable[object]]) -> None:
        header = [str(h) for h in header]
        body = [["" if c is None else str(c) for c in r] for r in rows]
        widths = [len(h) for h in header]
        for r in body:
            widths = [max(w, len(c)) for w, c in zip(widths, r)]
        print("  ".join(h.ljust(w) for h, w in zip(header, widths)).rstrip())
        for r in body:
            print("  ".join(c.ljust(w) for c, w in zip(r, widths)).rstrip())

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """An error block on stderr: title, message, optional detail lines and a hint."""
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Unexpected exceptions: one line, or the traceback under --debug."""
        if self.debug:
            import traceback
            traceback.print_exception(exc)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        print(message)

    def print_warning(self, message: str) -> None:
        print(f"WARNING: {message}", file=sys.stderr)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
