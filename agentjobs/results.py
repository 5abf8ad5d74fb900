"""Result store: JSON documents on disk plus a SQLite index of job states."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, create_engine

from agentjobs.schemas import (
    JobMessage,
    JobResult,
    JobResultRecord,
    JobSection,
    JobStatus,
    JobStatusResponse,
    RequestSection,
    ResultMetadata,
)
from agentjobs.settings import StorageSettings

LOGGER = logging.getLogger(__name__)

RESULT_FILENAME = "result.json"
_TERMINAL = {JobStatus.COMPLETED.value, JobStatus.FAILED.value}


class ResultStoreError(RuntimeError):
    """Persisting or reading a job result failed."""


class JobIndexRecord(SQLModel, table=True):
    """Lifecycle marker for each job id, kept next to the result documents."""

    __tablename__ = "jobs"

    job_id: str = Field(primary_key=True)
    container_name: str
    status: str = Field(default=JobStatus.QUEUED.value)
    submitted_at: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    processing_time: int | None = None
    attempts: int = 0
    result_key: str | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ThreadMemoryRecord(SQLModel, table=True):
    """Most recent conversation messages of a thread, as a JSON list."""

    __tablename__ = "thread_memory"

    thread_id: str = Field(primary_key=True)
    messages: str = "[]"
    job_id: str | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class StorageConfig:
    """Resolved filesystem + database locations."""

    results_root: Path
    db_path: Path
    region: str | None = None
    version: str = "1.0.0"

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> StorageConfig:
        return cls(
            results_root=settings.results_root,
            db_path=settings.db_path,
            region=settings.region,
            version=settings.version,
        )


def _check_segment(value: str, label: str) -> str:
    if not value or value in {".", ".."} or "/" in value or "\\" in value:
        raise ValueError(f"Invalid {label} '{value}'")
    return value


def result_key(container_name: str, job_id: str) -> str:
    """Storage key of a job's result document: ``{container}/{jobId}/result.json``."""

    return "/".join(
        (_check_segment(container_name, "container name"), _check_segment(job_id, "job id"), RESULT_FILENAME)
    )


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ResultStore:
    """Facade around SQLite + filesystem persistence.

    ``put`` is the commit point of a job: the document is written with an atomic
    rename before the index row flips to its terminal state, so a reader never
    sees a terminal status without a readable document.
    """

    def __init__(self, config: StorageConfig) -> None:
        self.config = config
        self.config.results_root.mkdir(parents=True, exist_ok=True)
        self.config.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(
            f"sqlite:///{self.config.db_path}",
            connect_args={"check_same_thread": False},
        )
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session

    def resolve(self, key: str) -> Path:
        root = self.config.results_root.resolve()
        target = (root / key).resolve()
        try:
            target.relative_to(root)
        except ValueError:
            raise FileNotFoundError(key)
        return target

    def _write_atomic(self, path: Path, payload: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp.write_bytes(payload)
            os.replace(tmp, path)
        finally:
            if tmp.exists():
                tmp.unlink()

    def mark_queued(self, job: JobMessage) -> None:
        with self.session() as session:
            if session.get(JobIndexRecord, job.job_id) is not None:
                return
            session.add(
                JobIndexRecord(
                    job_id=job.job_id,
                    container_name=job.container_name,
                    submitted_at=job.timestamp,
                )
            )
            session.commit()

    def mark_processing(self, job: JobMessage) -> None:
        with self.session() as session:
            record = session.get(JobIndexRecord, job.job_id)
            if record is None:
                record = JobIndexRecord(
                    job_id=job.job_id,
                    container_name=job.container_name,
                    submitted_at=job.timestamp,
                )
            elif record.status in _TERMINAL:
                return
            record.status = JobStatus.PROCESSING.value
            record.started_at = _now()
            record.attempts += 1
            record.updated_at = _now()
            session.add(record)
            session.commit()

    def put(self, job: JobMessage, result: JobResult) -> str:
        """Persist the result document for ``job`` and return its key.

        Raises:
            ResultStoreError: the document or the index row could not be written.
        """

        key = result_key(job.container_name, job.job_id)
        record = JobResultRecord(
            job=JobSection(
                job_id=job.job_id,
                container_name=job.container_name,
                submitted_at=job.timestamp,
                completed_at=result.timestamp,
                processing_time=result.processing_time,
            ),
            request=RequestSection(
                input=job.input,
                thread_id=job.thread_id,
                original_request=job.original_request,
            ),
            result=result,
            metadata=ResultMetadata(region=self.config.region, version=self.config.version),
        )
        try:
            payload = json.dumps(record.to_wire(), indent=2).encode("utf-8")
            self._write_atomic(self.resolve(key), payload)
            with self.session() as session:
                index = session.get(JobIndexRecord, job.job_id) or JobIndexRecord(
                    job_id=job.job_id,
                    container_name=job.container_name,
                    submitted_at=job.timestamp,
                )
                index.status = JobStatus.COMPLETED.value if result.success else JobStatus.FAILED.value
                index.completed_at = _now()
                index.processing_time = result.processing_time
                index.result_key = key
                index.updated_at = _now()
                session.add(index)
                session.commit()
        except (OSError, SQLAlchemyError, TypeError, ValueError) as exc:
            raise ResultStoreError(f"Failed to store result for job {job.job_id}: {exc}") from exc
        LOGGER.info("Stored %s result for job %s at %s", "success" if result.success else "failure", job.job_id, key)
        return key

    def fetch_index(self, job_id: str) -> JobIndexRecord | None:
        with self.session() as session:
            return session.get(JobIndexRecord, job_id)

    def find_key(self, job_id: str) -> str | None:
        """Locate ``{container}/{job_id}/result.json``, preferring the indexed key.

        Without an index row each container directory is checked for that exact
        path; the job id is never expanded as a pattern.
        """

        index = self.fetch_index(job_id)
        if index is not None and index.result_key:
            return index.result_key
        _check_segment(job_id, "job id")
        root = self.config.results_root
        for container in sorted(entry.name for entry in root.iterdir() if entry.is_dir()):
            if (root / container / job_id / RESULT_FILENAME).is_file():
                return result_key(container, job_id)
        return None

    def get(self, job_id: str) -> JobResultRecord | None:
        key = self.find_key(job_id)
        if key is None:
            return None
        path = self.resolve(key)
        if not path.exists():
            return None
        return JobResultRecord.model_validate(json.loads(path.read_text(encoding="utf-8")))

    def has_result(self, job_id: str) -> bool:
        return self.get(job_id) is not None

    def status(self, job_id: str) -> JobStatusResponse:
        record = self.get(job_id)
        if record is not None:
            result = record.result
            return JobStatusResponse(
                job_id=job_id,
                status=JobStatus.COMPLETED if result.success else JobStatus.FAILED,
                container_name=record.job.container_name,
                submitted_at=record.job.submitted_at,
                completed_at=record.job.completed_at,
                processing_time=record.job.processing_time,
                result=result.data if result.success else None,
                error=None if result.success else result.error.model_dump(by_alias=True, exclude_none=True),
                result_url=f"/api/job/{job_id}/result",
            )
        index = self.fetch_index(job_id)
        if index is None:
            return JobStatusResponse(job_id=job_id, status=JobStatus.NOT_FOUND)
        status = JobStatus(index.status)
        if status.value in _TERMINAL:
            # Index says done but the document is gone; report it as still running.
            LOGGER.warning("Job %s is marked %s but has no result document", job_id, status.value)
            status = JobStatus.PROCESSING
        return JobStatusResponse(
            job_id=job_id,
            status=status,
            container_name=index.container_name,
            submitted_at=index.submitted_at,
        )

    def load_thread(self, thread_id: str) -> list[dict[str, Any]]:
        with self.session() as session:
            record = session.get(ThreadMemoryRecord, thread_id)
            if record is None:
                return []
            return json.loads(record.messages)

    def save_thread(self, thread_id: str, messages: list[dict[str, Any]], *, job_id: str | None = None) -> None:
        with self.session() as session:
            record = session.get(ThreadMemoryRecord, thread_id) or ThreadMemoryRecord(thread_id=thread_id)
            record.messages = json.dumps(messages, default=str)
            record.job_id = job_id
            record.updated_at = _now()
            session.add(record)
            session.commit()

    async def recall(self, thread_id: str) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self.load_thread, thread_id)

    async def remember(self, thread_id: str, messages: list[dict[str, Any]], *, job_id: str | None = None) -> None:
        await asyncio.to_thread(self.save_thread, thread_id, messages, job_id=job_id)

    def write_artifact(self, key: str, data: bytes) -> Path:
        path = self.resolve(key)
        self._write_atomic(path, data)
        return path

    async def save_artifact(self, key: str, data: bytes) -> str:
        return str(self.write_artifact(key, data))


def build_store(config: StorageConfig) -> ResultStore:
    """Convenience wrapper used by FastAPI startup hooks."""

    return ResultStore(config=config)
