"""OpenAI vector store client: index lifecycle, batch uploads and processing status."""

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone
from typing import Any, Optional

from openai import AsyncOpenAI

from ragchat_core.cancellation import CancellationToken, run_cancellable
from ragchat_core.exceptions import (
    ConfigurationError,
    InvalidRequestError,
    ProcessingTimeoutError,
    ProviderError,
)
from ragchat_core.orchestrator.retry_handler import RetryConfig, RetryHandler
from ragchat_core.providers.openai_provider import classify_openai_error
from ragchat_core.telemetry.logger import get_logger

from .models import (
    MAX_FILE_SIZE,
    MAX_FILES_PER_BATCH,
    SUPPORTED_FILE_TYPES,
    BatchJob,
    BatchStatus,
    FileStatus,
    FileUpload,
    IndexStats,
    UploadedFile,
    UploadResult,
)

logger = get_logger(__name__)

DEFAULT_INDEX_NAME = "RAG Chat Vector Store"
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_MAX_WAIT_TIME = 300.0

ProgressCallback = Callable[[BatchJob], Optional[Awaitable[None]]]

_VENDOR_FILE_STATUS = {
    "completed": FileStatus.COMPLETED,
    "failed": FileStatus.FAILED,
    "cancelled": FileStatus.FAILED,
    "in_progress": FileStatus.PROCESSING,
}


def _from_epoch(value: Optional[int]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _counts(file_counts: Any) -> dict[str, int]:
    return {
        key: getattr(file_counts, key, 0) or 0
        for key in ("completed", "in_progress", "failed", "cancelled", "total")
    }


class VectorStoreClient:
    """Manages one vector index and the files attached to it.

    Every vendor call goes through a ``RetryHandler``; per-file failures are
    reported on the affected entries instead of failing the whole operation.
    """

    def __init__(
        self,
        api_key: Optional[str],
        vector_store_id: Optional[str] = None,
        *,
        index_name: str = DEFAULT_INDEX_NAME,
        client: Optional[AsyncOpenAI] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        retry_config: Optional[RetryConfig] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_wait_time: float = DEFAULT_MAX_WAIT_TIME,
        max_file_size: int = MAX_FILE_SIZE,
        max_files: int = MAX_FILES_PER_BATCH,
        upload_concurrency: int = 5,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not api_key or not api_key.strip():
            raise ConfigurationError("API key is required")

        self.client = client or AsyncOpenAI(
            api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0
        )
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.max_wait_time = max_wait_time
        self.max_file_size = max_file_size
        self.max_files = max_files
        self.upload_concurrency = upload_concurrency
        self._sleep = sleep or asyncio.sleep
        self._clock = clock
        self.retry_handler = RetryHandler(retry_config, sleep=self._sleep)

        self.index_name = index_name
        self._index_id = vector_store_id
        self._index_task: Optional[asyncio.Future] = None
        self._batches: dict[str, BatchJob] = {}

    @classmethod
    def from_settings(cls, settings=None, **kwargs) -> "VectorStoreClient":
        from ragchat_core.config import get_settings

        settings = settings or get_settings()
        api_key = settings.openai_api_key.get_secret_value() if settings.openai_api_key else None
        return cls(
            api_key,
            settings.openai_vector_store_id,
            index_name=settings.vector_store_name,
            base_url=settings.openai_base_url,
            timeout=settings.request_timeout,
            retry_config=settings.retry_config(),
            poll_interval=settings.vector_store_poll_interval,
            max_wait_time=settings.vector_store_max_wait_time,
            max_file_size=settings.vector_store_max_file_size,
            max_files=settings.vector_store_max_files,
            upload_concurrency=settings.vector_store_upload_concurrency,
            **kwargs,
        )

    @property
    def index_id(self) -> Optional[str]:
        return self._index_id

    def _classify(self, error: BaseException) -> ProviderError:
        return classify_openai_error(error, self.timeout)

    async def _call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        return await self.retry_handler.execute(func, *args, classify=self._classify, **kwargs)

    async def ensure_index(self, name: Optional[str] = None) -> str:
        """Return the index id, creating the index when it is missing.

        A known id is verified with one read on every call, so an index
        deleted on the vendor side is recreated. Concurrent callers share
        the in-flight verification or creation.
        """
        if self._index_task is None or self._index_task.done():
            self._index_task = asyncio.ensure_future(self._resolve_index(name))
        return await asyncio.shield(self._index_task)

    async def _resolve_index(self, name: Optional[str]) -> str:
        if self._index_id:
            try:
                await self._call(self.client.vector_stores.retrieve, self._index_id)
                return self._index_id
            except ProviderError as e:
                logger.info(
                    "vector_store_not_found", vector_store_id=self._index_id, error=e.message
                )

        vector_store = await self._call(
            self.client.vector_stores.create, name=name or self.index_name
        )
        self._index_id = vector_store.id
        logger.info("vector_store_created", vector_store_id=vector_store.id)
        return vector_store.id

    def validate_file(self, upload: FileUpload) -> Optional[str]:
        """Reason ``upload`` cannot be indexed, or ``None`` when it is acceptable."""
        if upload.size > self.max_file_size:
            return f"File size should be less than {self.max_file_size // 1024 // 1024}MB"
        content_type = upload.resolved_content_type
        if content_type not in SUPPORTED_FILE_TYPES:
            return (
                f"File type {content_type or 'unknown'} is not supported; "
                f"should be one of: {', '.join(sorted(SUPPORTED_FILE_TYPES))}"
            )
        return None

    async def _create_file(self, upload: FileUpload) -> Any:
        return await self._call(
            self.client.files.create,
            file=(upload.filename, upload.content, upload.resolved_content_type),
            purpose="assistants",
        )

    async def upload_file(self, upload: FileUpload) -> UploadedFile:
        """Upload one file and attach it to the index directly."""
        record = UploadedFile(filename=upload.filename, status=FileStatus.PENDING, bytes=upload.size)
        error = self.validate_file(upload)
        if error:
            record.status = FileStatus.FAILED
            record.error = error
            return record

        index_id = await self.ensure_index()
        record.status = FileStatus.UPLOADING
        try:
            created = await self._create_file(upload)
            record.id = created.id
            await self._call(
                self.client.vector_stores.files.create, index_id, file_id=created.id
            )
        except ProviderError as e:
            logger.warning("file_upload_failed", filename=upload.filename, error=e.message)
            record.status = FileStatus.FAILED
            record.error = e.message
            return record

        record.status = FileStatus.PROCESSING
        return record

    async def upload_files(self, files: Sequence[FileUpload]) -> UploadResult:
        """Upload ``files`` independently, then attach the successes in one batch.

        Raises:
            InvalidRequestError: More files than one batch accepts
            ProviderError: The batch-creation call failed
        """
        if len(files) > self.max_files:
            raise InvalidRequestError(
                f"Too many files: {len(files)} (maximum {self.max_files} per batch)",
                provider="openai",
                status_code=400,
            )

        records = [
            UploadedFile(filename=f.filename, status=FileStatus.PENDING, bytes=f.size) for f in files
        ]
        valid = []
        for upload, record in zip(files, records):
            error = self.validate_file(upload)
            if error:
                record.status = FileStatus.FAILED
                record.error = error
            else:
                valid.append((upload, record))

        if not valid:
            return UploadResult(batch_id="", files=records)

        index_id = await self.ensure_index()
        semaphore = asyncio.Semaphore(self.upload_concurrency)

        async def upload_one(upload: FileUpload, record: UploadedFile) -> None:
            async with semaphore:
                record.status = FileStatus.UPLOADING
                try:
                    created = await self._create_file(upload)
                except ProviderError as e:
                    logger.warning("file_upload_failed", filename=upload.filename, error=e.message)
                    record.status = FileStatus.FAILED
                    record.error = e.message
                    return
                record.id = created.id

        await asyncio.gather(*(upload_one(upload, record) for upload, record in valid))

        file_ids = [r.id for r in records if r.status != FileStatus.FAILED and r.id]
        if not file_ids:
            return UploadResult(batch_id="", files=records)

        batch = await self._call(
            self.client.vector_stores.file_batches.create, index_id, file_ids=file_ids
        )
        for record in records:
            if record.id in file_ids:
                record.status = FileStatus.PROCESSING

        self._batches[batch.id] = BatchJob(
            batch_id=batch.id, file_ids=set(file_ids), total_count=len(file_ids),
            in_progress_count=len(file_ids),
        )
        logger.info(
            "file_batch_created",
            batch_id=batch.id,
            uploaded=len(file_ids),
            failed=len(records) - len(file_ids),
        )
        return UploadResult(batch_id=batch.id, files=records)

    async def check_batch_status(self, batch_id: str) -> BatchJob:
        """Fetch the batch's status and per-file counts.

        A batch already seen in a terminal state is never reported as in progress.
        """
        index_id = await self.ensure_index()
        batch = await self._call(
            self.client.vector_stores.file_batches.retrieve, batch_id, vector_store_id=index_id
        )
        counts = _counts(batch.file_counts)
        previous = self._batches.get(batch_id)

        job = BatchJob(
            batch_id=batch_id,
            file_ids=previous.file_ids if previous else set(),
            status=BatchStatus(batch.status),
            completed_count=counts["completed"],
            in_progress_count=counts["in_progress"],
            failed_count=counts["failed"],
            cancelled_count=counts["cancelled"],
            total_count=counts["total"],
        )
        if previous is not None and previous.is_terminal and not job.is_terminal:
            return previous

        self._batches[batch_id] = job
        return job

    async def check_file_status(self, file_ids: Sequence[str]) -> list[UploadedFile]:
        """Status of each file; a failed lookup only affects its own entry."""
        index_id = await self.ensure_index()

        async def check_one(file_id: str) -> UploadedFile:
            try:
                vector_file = await self._call(
                    self.client.vector_stores.files.retrieve, file_id, vector_store_id=index_id
                )
            except ProviderError as e:
                error = "File not found" if e.status_code == 404 else e.message
                return UploadedFile(
                    id=file_id, filename=file_id, status=FileStatus.FAILED, error=error
                )
            return self._to_uploaded_file(vector_file)

        return list(await asyncio.gather(*(check_one(file_id) for file_id in file_ids)))

    @staticmethod
    def _to_uploaded_file(vector_file: Any) -> UploadedFile:
        status = _VENDOR_FILE_STATUS.get(vector_file.status, FileStatus.PROCESSING)
        last_error = getattr(vector_file, "last_error", None)
        return UploadedFile(
            id=vector_file.id,
            # vector store files carry no filename
            filename=vector_file.id,
            status=status,
            error=getattr(last_error, "message", None) if status == FileStatus.FAILED else None,
            created_at=_from_epoch(vector_file.created_at),
            bytes=getattr(vector_file, "usage_bytes", None),
        )

    async def wait_for_processing(
        self,
        batch_id: str,
        poll_interval: Optional[float] = None,
        max_wait_time: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> bool:
        """Poll ``batch_id`` until it reaches a terminal state.

        Returns ``True`` when the batch completed and ``False`` when it failed
        or was cancelled. ``on_progress`` receives every polled ``BatchJob``
        and may be a coroutine function.

        Raises:
            ProcessingTimeoutError: Still in progress after ``max_wait_time`` seconds
            OperationCancelledError: ``cancel_token`` fired
        """
        poll_interval = self.poll_interval if poll_interval is None else poll_interval
        max_wait_time = self.max_wait_time if max_wait_time is None else max_wait_time
        deadline = self._clock() + max_wait_time

        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            job = await run_cancellable(self.check_batch_status(batch_id), cancel_token)
            if on_progress is not None:
                result = on_progress(job)
                if inspect.isawaitable(result):
                    await result

            if job.status == BatchStatus.COMPLETED:
                return True
            if job.is_terminal:
                logger.warning("file_batch_unsuccessful", batch_id=batch_id, status=job.status.value)
                return False

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ProcessingTimeoutError(batch_id, max_wait_time)
            await run_cancellable(self._sleep(min(poll_interval, remaining)), cancel_token)

    async def delete_file(self, file_id: str) -> bool:
        """Detach ``file_id`` from the index and delete it from file storage.

        Both steps are attempted; returns ``True`` only when both succeeded.
        """
        index_id = await self.ensure_index()
        deleted = True

        try:
            await self._call(
                self.client.vector_stores.files.delete, file_id, vector_store_id=index_id
            )
        except ProviderError as e:
            deleted = False
            logger.warning("vector_store_file_delete_failed", file_id=file_id, error=e.message)

        try:
            await self._call(self.client.files.delete, file_id)
        except ProviderError as e:
            deleted = False
            logger.warning("file_delete_failed", file_id=file_id, error=e.message)

        return deleted

    async def list_files(self, limit: int = 20) -> list[UploadedFile]:
        index_id = await self.ensure_index()
        page = await self._call(self.client.vector_stores.files.list, index_id, limit=limit)
        return [self._to_uploaded_file(vector_file) for vector_file in page.data]

    async def get_index_stats(self) -> IndexStats:
        index_id = await self.ensure_index()
        vector_store = await self._call(self.client.vector_stores.retrieve, index_id)
        return IndexStats(
            index_id=vector_store.id,
            name=vector_store.name,
            status=vector_store.status,
            usage_bytes=vector_store.usage_bytes or 0,
            file_counts=_counts(vector_store.file_counts),
        )

    async def close(self) -> None:
        await self.client.close()
