"""Refresh orchestration: one worker process per package, bounded concurrency."""

import asyncio
import json
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..errors import CacheIOError, SymbolCacheError, WorkerStartupError
from ..store.field_store import FieldIndexStore
from ..store.symbol_store import SymbolStore
from .artifact_extractor import has_extracted_sources, parse_artifact_identity, source_tree_dir
from .models import ArtifactStatus, FieldIndexSnapshot, ObjectRecord, ProcedureRecord

logger = logging.getLogger(__name__)

WORKER_MODULE = "alcache.indexer.symbol_worker"
BENIGN_ERROR = "not a valid archive"

# Success messages carry whole symbol maps on a single line
_STREAM_LIMIT = 1 << 30

_PROJECT_ROOT = Path(__file__).resolve().parents[2]


def default_max_workers() -> int:
    return max(1, min(os.cpu_count() or 1, 4))


def default_worker_command() -> List[str]:
    return [sys.executable, "-m", WORKER_MODULE]


def worker_environment(log_level: Optional[str] = None) -> Dict[str, str]:
    """Environment for worker processes, with the project importable."""
    env = dict(os.environ)
    python_path = env.get("PYTHONPATH")
    env["PYTHONPATH"] = (
        f"{_PROJECT_ROOT}{os.pathsep}{python_path}" if python_path else str(_PROJECT_ROOT)
    )
    if log_level:
        env["LOG_LEVEL"] = log_level
    return env


@dataclass
class RefreshOptions:
    """Options shared by every worker of a refresh."""

    cache_path: str
    extract_path: str
    enable_src_extraction: bool = False
    src_extraction_path: str = ""
    log_level: str = "normal"

    def to_message(self) -> Dict[str, Any]:
        """Options in the shape the worker expects."""
        return {
            "cachePath": self.cache_path,
            "extractPath": self.extract_path,
            "enableSrcExtraction": self.enable_src_extraction,
            "srcExtractionPath": self.src_extraction_path,
            "logLevel": self.log_level,
        }


@dataclass
class ArtifactJob:
    """State of one package within a refresh."""

    app_path: str
    status: ArtifactStatus = ArtifactStatus.PENDING
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None
    warnings: List[str] = field(default_factory=list)
    symbols: Dict[str, ObjectRecord] = field(default_factory=dict)
    procedures: Dict[str, List[ProcedureRecord]] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ArtifactStatus.SKIPPED, ArtifactStatus.SUCCEEDED, ArtifactStatus.FAILED)


@dataclass
class RefreshReport:
    """Outcome of one refresh."""

    jobs: Dict[str, ArtifactJob] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    already_running: bool = False
    committed: bool = False
    save_error: Optional[str] = None
    completed: int = 0
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    def with_status(self, status: ArtifactStatus) -> List[str]:
        """Paths of the artifacts that ended in ``status``."""
        return [path for path, job in self.jobs.items() if job.status == status]

    @property
    def succeeded(self) -> List[str]:
        return self.with_status(ArtifactStatus.SUCCEEDED)

    @property
    def failed(self) -> List[str]:
        return self.with_status(ArtifactStatus.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self.with_status(ArtifactStatus.SKIPPED)


class Notifier:
    """Operator-facing notifications; the default implementation logs."""

    def progress(self, completed: int, total: int, message: str) -> None:
        logger.info(f"[{completed}/{total}] {message}")

    def info(self, message: str) -> None:
        logger.info(message)

    def warning(self, message: str) -> None:
        logger.warning(message)

    def error(self, message: str) -> None:
        logger.error(message)


class RefreshCoordinator:
    """Runs package workers and commits their merged results to the store."""

    def __init__(
        self,
        store: SymbolStore,
        options: RefreshOptions,
        max_workers: Optional[int] = None,
        notifier: Optional[Notifier] = None,
        worker_command: Optional[Sequence[str]] = None,
    ):
        """Initialize the coordinator.

        Args:
            store: Cache store receiving the merged results
            options: Options passed to every worker
            max_workers: Concurrent worker limit (defaults to CPU count, at most 4)
            notifier: Receives progress, warnings and errors
            worker_command: Command starting one worker process
        """
        self.store = store
        self.options = options
        self.max_workers = max_workers or default_max_workers()
        self.notifier = notifier or Notifier()
        self.worker_command = list(worker_command or default_worker_command())
        self.last_report: Optional[RefreshReport] = None
        self._refreshing = False
        self._lock = asyncio.Lock()

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing

    async def refresh(self, app_paths: Iterable[str], force: bool = False) -> RefreshReport:
        """Process every package and replace the cached object map.

        Args:
            app_paths: Package files to process
            force: Reprocess packages whose source tree already exists

        Returns:
            Report of the run; ``already_running`` is set if another refresh
            was active and nothing was done
        """
        if self._refreshing:
            self.notifier.info("Symbol cache refresh already in progress")
            return RefreshReport(already_running=True, completed_at=time.time())

        self._refreshing = True
        try:
            report = await self._run(list(dict.fromkeys(str(path) for path in app_paths)), force)
            self.last_report = report
            return report
        finally:
            self._refreshing = False

    async def _run(self, app_paths: List[str], force: bool) -> RefreshReport:
        report = RefreshReport(jobs={path: ArtifactJob(app_path=path) for path in app_paths})
        total = len(app_paths)
        logger.info(f"Refreshing symbol cache from {total} packages with {self.max_workers} workers")

        semaphore = asyncio.Semaphore(self.max_workers)
        tasks = []
        for job in report.jobs.values():
            if self.is_skip_eligible(job.app_path, force):
                job.status = ArtifactStatus.SKIPPED
                job.completed_at = time.time()
                await self._advance(report, job, total)
                continue
            tasks.append(self._run_job(job, semaphore, report, total))

        await asyncio.gather(*tasks)

        self._commit(report)
        report.completed_at = time.time()
        logger.info(
            f"Refresh finished: {len(report.succeeded)} succeeded, {len(report.skipped)} skipped, "
            f"{len(report.failed)} failed"
        )
        return report

    def is_skip_eligible(self, app_path: str, force: bool = False) -> bool:
        """A package is skipped when its source tree was already extracted."""
        if force or not self.options.enable_src_extraction or not self.options.src_extraction_path:
            return False
        artifact = parse_artifact_identity(app_path)
        if artifact is None:
            return False
        return has_extracted_sources(source_tree_dir(artifact, self.options.src_extraction_path))

    async def _run_job(
        self, job: ArtifactJob, semaphore: asyncio.Semaphore, report: RefreshReport, total: int
    ) -> None:
        try:
            async with semaphore:
                job.status = ArtifactStatus.RUNNING
                job.started_at = time.time()
                await self._execute(job, report)
        except WorkerStartupError as e:
            self._fail(job, report, str(e))
        except Exception as e:
            logger.error(f"Unexpected failure running worker for {job.app_path}: {e}", exc_info=True)
            self._fail(job, report, str(e))
        finally:
            if not job.is_terminal:
                self._fail(job, report, "Worker finished without a result")
            job.completed_at = time.time()
            await self._advance(report, job, total)

    async def _execute(self, job: ArtifactJob, report: RefreshReport) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.worker_command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=worker_environment(),
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            raise WorkerStartupError(f"Could not start worker for {Path(job.app_path).name}: {e}") from e

        request = {"type": "process", "appPath": job.app_path, "options": self.options.to_message()}
        try:
            process.stdin.write((json.dumps(request) + "\n").encode("utf-8"))
            await process.stdin.drain()
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Worker for {job.app_path} closed its input early: {e}")

        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                logger.debug(f"Worker output is not a message: {line[:200]}")
                continue
            self._handle_message(job, report, message)

        job.exit_code = await process.wait()
        if not job.is_terminal:
            self._fail(job, report, f"Worker exited with code {job.exit_code} without a result")

    def _handle_message(self, job: ArtifactJob, report: RefreshReport, message: Dict[str, Any]) -> None:
        message_type = message.get("type")
        name = Path(job.app_path).name

        if message_type == "progress":
            logger.debug(f"{name}: {message.get('message', '')}")
        elif message_type == "warning":
            text = f"{name}: {message.get('message', '')}"
            job.warnings.append(text)
            report.warnings.append(text)
            self.notifier.warning(text)
        elif job.is_terminal:
            logger.warning(f"Ignoring {message_type} message after result for {name}")
        elif message_type == "error":
            self._fail(job, report, message.get("message") or "Unknown worker error")
            if message.get("stack"):
                logger.debug(message["stack"])
        elif message_type == "success":
            job.symbols = {
                record_name: ObjectRecord.from_dict({**data, "name": data.get("name", record_name)})
                for record_name, data in (message.get("symbols") or {}).items()
            }
            for record in job.symbols.values():
                record.source_app = record.source_app or job.app_path
            job.procedures = {
                key: [ProcedureRecord.from_dict(item) for item in items]
                for key, items in (message.get("procedures") or {}).items()
            }
            job.status = ArtifactStatus.SUCCEEDED
            logger.info(f"{name}: {len(job.symbols)} objects, {len(job.procedures)} procedure lists")
        else:
            logger.warning(f"Unknown message type from worker for {name}: {message_type}")

    def _fail(self, job: ArtifactJob, report: RefreshReport, error: str) -> None:
        job.status = ArtifactStatus.FAILED
        job.error = error
        text = f"{Path(job.app_path).name}: {error}"
        report.errors.append(text)
        if BENIGN_ERROR in error:
            self.notifier.warning(text)
        else:
            self.notifier.error(text)

    async def _advance(self, report: RefreshReport, job: ArtifactJob, total: int) -> None:
        async with self._lock:
            report.completed += 1
            completed = report.completed
        self.notifier.progress(completed, total, f"{Path(job.app_path).name} {job.status.value}")

    def _commit(self, report: RefreshReport) -> None:
        merged: Dict[str, ObjectRecord] = {}
        for app_path in report.skipped:
            merged.update(self.store.objects_from_app(app_path))
        procedures: Dict[str, List[ProcedureRecord]] = {}
        for job in report.jobs.values():
            if job.status == ArtifactStatus.SUCCEEDED:
                merged.update(job.symbols)
                procedures.update(job.procedures)

        self.store.replace_symbols(merged)
        self.store.assign_procedures(procedures)
        try:
            self.store.save()
            report.committed = True
        except CacheIOError as e:
            report.save_error = str(e)
            self.notifier.warning(f"Symbol cache could not be saved: {e}")
        logger.info(f"Committed {len(merged)} objects to the symbol cache")

    def get_status_dict(self, report: Optional[RefreshReport] = None) -> Dict[str, Any]:
        """Summarize a refresh report (the last one by default)."""
        report = report or self.last_report
        result: Dict[str, Any] = {"refreshing": self._refreshing, "max_workers": self.max_workers}
        if report is None:
            return result

        total = len(report.jobs)
        result.update(
            {
                "total": total,
                "completed": report.completed,
                "progress_pct": round(report.completed / total * 100, 2) if total else 100.0,
                "succeeded": len(report.succeeded),
                "skipped": len(report.skipped),
                "failed": len(report.failed),
                "errors": list(report.errors),
                "warnings_count": len(report.warnings),
                "committed": report.committed,
                "started_at": report.started_at,
            }
        )
        if report.completed_at:
            result["completed_at"] = report.completed_at
            result["total_seconds"] = round(report.completed_at - report.started_at, 2)
        if report.save_error:
            result["save_error"] = report.save_error
        return result


class FieldIndexWorker:
    """One long-lived worker process serving field-index updates.

    Requests are serialized, and the worker is restarted if it has exited.
    Replies are persisted through the field store by this process only.
    """

    def __init__(
        self,
        field_store: FieldIndexStore,
        worker_command: Optional[Sequence[str]] = None,
    ):
        self.field_store = field_store
        self.worker_command = list(worker_command or default_worker_command())
        self._process: Optional[asyncio.subprocess.Process] = None
        self._lock = asyncio.Lock()

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def _ensure_process(self) -> asyncio.subprocess.Process:
        if self.is_alive:
            return self._process
        if self._process is not None:
            logger.warning(f"Field index worker exited with code {self._process.returncode}, restarting")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.worker_command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=worker_environment(),
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            raise WorkerStartupError(f"Could not start field index worker: {e}") from e
        logger.info(f"Started field index worker (pid {self._process.pid})")
        return self._process

    async def _send(self, process: asyncio.subprocess.Process, message: Dict[str, Any]) -> None:
        process.stdin.write((json.dumps(message) + "\n").encode("utf-8"))
        await process.stdin.drain()

    async def update(
        self,
        src_extraction_path: str,
        global_storage_path: str,
        app_name: Optional[str] = None,
        log_level: str = "normal",
    ) -> FieldIndexSnapshot:
        """Rescan the source tree in the worker and persist the result.

        Raises:
            SymbolCacheError: If the worker reports an error or dies
        """
        async with self._lock:
            process = await self._ensure_process()
            request = {
                "type": "updateFieldCache",
                "options": {
                    "srcExtractionPath": src_extraction_path,
                    "globalStoragePath": global_storage_path,
                    "appName": app_name,
                    "logLevel": log_level,
                },
            }
            try:
                await self._send(process, request)
            except (BrokenPipeError, ConnectionResetError) as e:
                raise SymbolCacheError(f"Field index worker is not accepting requests: {e}") from e

            while True:
                raw_line = await process.stdout.readline()
                if not raw_line:
                    await process.wait()
                    raise SymbolCacheError(
                        f"Field index worker exited with code {process.returncode} during update"
                    )
                try:
                    message = json.loads(raw_line.decode("utf-8", errors="replace"))
                except json.JSONDecodeError:
                    continue

                message_type = message.get("type")
                if message_type == "fieldCacheData":
                    snapshot = FieldIndexSnapshot.from_message(message)
                    try:
                        self.field_store.update(snapshot)
                    except CacheIOError as e:
                        self.field_store.snapshot = snapshot
                        logger.warning(f"Field index could not be saved: {e}")
                    logger.info(
                        f"Field index: {len(snapshot.reparsed)} files parsed, "
                        f"{len(snapshot.removed)} removed"
                    )
                    return snapshot
                if message_type == "fieldCacheError":
                    raise SymbolCacheError(f"Field index update failed: {message.get('message')}")
                logger.debug(f"Field index worker: {message.get('message', message_type)}")

    async def set_log_level(self, level: str) -> None:
        """Forward a log level change to the running worker."""
        async with self._lock:
            if not self.is_alive:
                return
            try:
                await self._send(self._process, {"type": "setLogLevel", "logLevel": level})
            except (BrokenPipeError, ConnectionResetError) as e:
                logger.warning(f"Could not change field index worker log level: {e}")

    async def close(self, timeout: float = 5.0) -> None:
        """Stop the worker by closing its input."""
        async with self._lock:
            if not self.is_alive:
                return
            process = self._process
            process.stdin.close()
            try:
                await asyncio.wait_for(process.wait(), timeout)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
            logger.info("Stopped field index worker")
