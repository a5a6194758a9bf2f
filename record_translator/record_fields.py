"""
Batch translation of every localizable field of a record.

For each eligible field one job per target locale is queued and run by a
small worker pool. Results are not written straight away: a single writer task
collects them and flushes to the host shortly after the first pending write,
when a field's jobs are done, and once more at the end. Cancellation is
cooperative and only stops jobs that have not started yet (plus requests that
are still waiting at the remote-call boundary).
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from record_translator.app_config import AppConfig
from record_translator.completion_client import (
    CancellationToken,
    StreamCallbacks,
    TranslationCancelledError
)
from record_translator.field_translator import (
    build_field_type_prompt,
    generate_record_context,
    is_editor_translatable,
    translate_field_value
)
from record_translator.host import FieldHost, FieldMeta

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]


@dataclass
class TranslateOptions:
    """
    Hooks and cancellation for ``translate_record_fields``.

    ``on_start`` fires when a field/locale job is queued, ``on_stream`` with every
    raw completion of that job, and ``on_complete`` once the job's result has
    been queued for writing.
    """
    on_start: Optional[Callable[[str, str, str], None]] = None
    on_complete: Optional[Callable[[str, str], None]] = None
    on_stream: Optional[Callable[[str, str, str], None]] = None
    cancellation: Optional[CancellationToken] = None


@dataclass
class RecordTranslationSummary:
    completed: int = 0
    failed: int = 0
    cancelled: bool = False
    failed_paths: List[str] = field(default_factory=list)
    written_paths: List[str] = field(default_factory=list)


class WriteBuffer:
    """
    Single-writer buffer between the translation workers and the host.

    Workers post messages; only the writer task touches the pending map and
    calls ``host.set_field_value``. Pending writes are flushed once
    ``debounce_seconds`` have passed since the first of them arrived, or on an
    explicit ``flush()``.
    """

    def __init__(self, host: FieldHost, debounce_seconds: float = 0.25, pacing_seconds: float = 0.08):
        self._host = host
        self._debounce_seconds = debounce_seconds
        self._pacing_seconds = pacing_seconds
        self._messages: asyncio.Queue = asyncio.Queue()
        self._pending: Dict[str, Any] = {}
        self._task: Optional[asyncio.Task] = None
        self.written: List[str] = []

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())

    def queue_write(self, path: str, value: Any) -> None:
        self._messages.put_nowait(('write', path, value))

    async def flush(self) -> None:
        done = asyncio.get_running_loop().create_future()
        self._messages.put_nowait(('flush', done))
        await done

    async def close(self) -> None:
        if self._task is None:
            return
        self._messages.put_nowait(('stop',))
        await self._task
        self._task = None

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        deadline: Optional[float] = None
        while True:
            try:
                if deadline is None:
                    message = await self._messages.get()
                else:
                    message = await asyncio.wait_for(
                        self._messages.get(), timeout=max(0.0, deadline - loop.time())
                    )
            except asyncio.TimeoutError:
                await self._write_pending()
                deadline = None
                continue

            kind = message[0]
            if kind == 'write':
                _, path, value = message
                self._pending[path] = value
                if deadline is None:
                    deadline = loop.time() + self._debounce_seconds
            elif kind == 'flush':
                await self._write_pending()
                deadline = None
                message[1].set_result(None)
            else:
                await self._write_pending()
                return

    async def _write_pending(self) -> None:
        if not self._pending:
            return
        entries = list(self._pending.items())
        self._pending.clear()
        logger.debug(f"Flushing {len(entries)} field write(s)")
        for path, value in entries:
            try:
                await self._host.set_field_value(path, value)
                self.written.append(path)
            except Exception as exc:
                logger.error(f"Failed to write field value '{path}': {exc}", exc_info=True)
                self._host.notify('warning', f"Could not save {path}")
            await asyncio.sleep(self._pacing_seconds)


def _is_cancelled(cancellation: Optional[CancellationToken]) -> bool:
    return cancellation is not None and cancellation.is_cancelled()


async def run_pool(jobs: List[Job], concurrency: int = 3, pacing_seconds: float = 0.06,
                   cancellation: Optional[CancellationToken] = None) -> None:
    """
    Run ``jobs`` with at most ``concurrency`` in flight.

    Workers pull from a shared queue and pause ``pacing_seconds`` after each
    job. Once cancellation is requested no further job is started. A job that
    raises does not stop the pool.
    """
    queue: asyncio.Queue = asyncio.Queue()
    for job in jobs:
        queue.put_nowait(job)

    async def worker() -> None:
        while True:
            if _is_cancelled(cancellation):
                return
            try:
                job = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await job()
            except Exception as exc:
                logger.error(f"Translation job raised unexpectedly: {exc}", exc_info=True)
            await asyncio.sleep(pacing_seconds)

    worker_count = max(1, min(concurrency, len(jobs)))
    await asyncio.gather(*(worker() for _ in range(worker_count)))


def is_field_translatable(field_meta: FieldMeta, settings: AppConfig) -> bool:
    """
    Decide whether a field takes part in record translation.

    The editor type must be enabled in ``translation_fields``; enabling
    ``rich_text`` also enables the single-block variations and enabling
    ``file`` also enables galleries. The field must be localized and not
    excluded by id or api key.
    """
    if not field_meta.localized or not is_editor_translatable(field_meta.editor, settings.translation_fields):
        return False
    excluded = settings.excluded_field_ids
    return field_meta.id not in excluded and field_meta.api_key not in excluded


def get_source_value(form_values: Dict[str, Any], field_meta: FieldMeta, source_locale: str) -> Any:
    """Return the field's source-locale value, or None when there is nothing to translate."""
    localized_value = form_values.get(field_meta.api_key)
    if not isinstance(localized_value, dict):
        return None
    source_value = localized_value.get(source_locale)
    if not source_value:
        return None
    return source_value


async def translate_record_fields(
        host: FieldHost,
        settings: AppConfig,
        target_locales: List[str],
        source_locale: str,
        options: Optional[TranslateOptions] = None
) -> RecordTranslationSummary:
    """
    Translate every eligible field of the host's record into ``target_locales``.

    Args:
        host (FieldHost): Field metadata, form values and the field writer.
        settings (AppConfig): Configuration and completion client.
        target_locales (List[str]): Locales to translate into.
        source_locale (str): Locale to translate from.
        options (Optional[TranslateOptions]): Hooks and cancellation.

    Returns:
        RecordTranslationSummary: Counts of finished and failed jobs and the written paths.
    """
    options = options or TranslateOptions()
    cancellation = options.cancellation
    summary = RecordTranslationSummary()
    record_context = generate_record_context(host.form_values, source_locale)

    fields = host.record_fields()
    field_types = host.field_editors_by_item_type()

    writer = WriteBuffer(host, settings.write_debounce_seconds, settings.write_pacing_seconds)
    writer.start()

    def make_job(field_meta: FieldMeta, locale: str, source_value: Any) -> Job:
        label = field_meta.display_label
        path = f"{field_meta.api_key}.{locale}"

        def on_stream(chunk: str) -> None:
            if options.on_stream is not None:
                options.on_stream(label, locale, chunk)

        callbacks = StreamCallbacks(on_stream=on_stream, cancellation=cancellation)

        async def job() -> None:
            try:
                translated_value = await translate_field_value(
                    source_value,
                    settings,
                    locale,
                    source_locale,
                    field_meta.editor,
                    build_field_type_prompt(field_meta.editor),
                    callbacks,
                    record_context,
                    field_types=field_types
                )
            except TranslationCancelledError:
                logger.info(f"Translation of '{path}' was cancelled")
                summary.cancelled = True
                return
            except Exception as exc:
                logger.warning(f"Field translation failed for {field_meta.api_key} → {locale}: {exc}")
                summary.failed += 1
                summary.failed_paths.append(path)
                host.notify('warning', f"Failed: {label} → {locale}")
                return

            writer.queue_write(path, translated_value)
            summary.completed += 1
            if options.on_complete is not None:
                options.on_complete(label, locale)

        return job

    try:
        for field_meta in fields:
            if _is_cancelled(cancellation):
                summary.cancelled = True
                break

            if not is_field_translatable(field_meta, settings):
                continue

            source_value = get_source_value(host.form_values, field_meta, source_locale)
            if source_value is None:
                continue

            jobs: List[Job] = []
            for locale in target_locales:
                if _is_cancelled(cancellation):
                    summary.cancelled = True
                    break
                if options.on_start is not None:
                    options.on_start(field_meta.display_label, locale, f"{field_meta.api_key}.{locale}")
                jobs.append(make_job(field_meta, locale, source_value))

            logger.info(f"Translating field '{field_meta.api_key}' into {len(jobs)} locale(s)")
            await run_pool(jobs, settings.concurrency, settings.job_pacing_seconds, cancellation)
            await writer.flush()
    finally:
        await writer.close()

    summary.written_paths = list(writer.written)
    if _is_cancelled(cancellation):
        summary.cancelled = True

    if summary.cancelled:
        host.notify('notice', 'Translation cancelled.')
    else:
        host.notify('notice', 'Translations completed.')
    logger.info(
        f"Record translation finished: {summary.completed} completed, {summary.failed} failed, "
        f"{len(summary.written_paths)} written"
    )
    return summary
