"""
Batch translation protocol for lists of strings.

A flat list of text values is split into size-bounded batches, each batch is
sent as one completion request asking for a JSON array of the same length, and
the per-batch answers are stitched back together in order. Unparseable batches
are skipped and the final list is reconciled to the original length, so the
caller always gets one string per input string.
"""
import asyncio
import json
import logging
import re
from typing import List, Optional

import jsonschema
import tiktoken

from record_translator.app_config import AppConfig
from record_translator.completion_client import (
    ChatMessage,
    CompletionClient,
    StreamCallbacks
)

logger = logging.getLogger(__name__)

# The model must answer with a bare JSON array; non-string items are repaired per position.
TRANSLATION_ARRAY_SCHEMA = {
    "type": "array"
}

DEFAULT_RECORD_CONTEXT = 'Record context: No additional context available.'

EXPLICIT_ARRAY_RULES = """
IMPORTANT: Your response must be a valid JSON array of strings with EXACTLY {expected_count} elements. Each element corresponds to the same position in the original array.
- Preserve ALL empty strings - do not remove or modify them
- Maintain the exact array length
- Return only the array of strings in valid JSON format
- Do not nest the array in an object
- Preserve all whitespace and spacing patterns"""

_LEADING_FENCE = re.compile(r'^```(?:json)?[ \t]*\n?', re.IGNORECASE)
_TRAILING_FENCE = re.compile(r'\n?```$')


class NonArrayResponseError(ValueError):
    """The model answered with valid JSON that is not an array."""


def language_code_to_name(settings: AppConfig, language_code: str) -> str:
    """
    Convert a locale code to its display name.

    Args:
        settings (AppConfig): Configuration holding the supported locales.
        language_code (str): The locale code (e.g., "de" or "pt-BR").

    Returns:
        str: The configured display name, the base language's name for regional
        codes, or the code itself when nothing is configured.
    """
    if language_code in settings.language_codes:
        return settings.language_codes[language_code]
    base_code = re.split(r'[-_]', language_code, maxsplit=1)[0]
    return settings.language_codes.get(base_code, language_code)


def count_tokens(text: str, model_name: str = 'gpt-4o-mini') -> int:
    """Count the number of tokens in ``text`` for ``model_name``.

    ``tiktoken.encoding_for_model`` may try to download model data. If that is
    not possible the ``gpt2`` encoding shipped with ``tiktoken`` is used, and as
    a last resort a whitespace split.
    """
    try:
        encoding = tiktoken.encoding_for_model(model_name)
    except Exception:
        try:
            encoding = tiktoken.get_encoding("gpt2")
        except Exception:
            return len(text.split())

    try:
        return len(encoding.encode(text))
    except Exception:
        return len(text.split())


def build_batches(text_values: List[str], char_limit: int = 4800) -> List[List[str]]:
    """
    Partition ``text_values`` into contiguous batches.

    A batch is closed before the item that would push its running character
    count over ``char_limit``. Batches are never empty, so an oversized item
    ends up alone in its own batch.

    Args:
        text_values (List[str]): The strings to partition.
        char_limit (int): Approximate character budget per batch.

    Returns:
        List[List[str]]: Batches in order, covering every item exactly once.
    """
    batches: List[List[str]] = []
    current: List[str] = []
    current_len = 0
    for value in text_values:
        value_len = len(value or '')
        estimated = current_len + value_len
        if estimated > char_limit and current:
            batches.append(current)
            current = [value]
            current_len = value_len
        else:
            current.append(value)
            current_len = estimated
    if current:
        batches.append(current)
    return batches


def build_batch_prompt(
        prompt_template: str,
        batch: List[str],
        total_count: int,
        from_locale_name: str,
        to_locale_name: str,
        record_context: str = ''
) -> str:
    """
    Build the single user message for one batch.

    Args:
        prompt_template (str): Template with ``{fieldValue}``, ``{fromLocale}``,
            ``{toLocale}`` and ``{recordContext}`` placeholders.
        batch (List[str]): The slice being translated.
        total_count (int): Length of the full list the slice belongs to.
        from_locale_name (str): Source language display name.
        to_locale_name (str): Target language display name.
        record_context (str): Optional description of the record.

    Returns:
        str: The prompt text.
    """
    prompt = (
        prompt_template
        .replace('{fieldValue}', f"translate the following string array {json.dumps(batch, indent=2, ensure_ascii=False)}")
        .replace('{fromLocale}', from_locale_name)
        .replace('{toLocale}', to_locale_name)
        .replace('{recordContext}', record_context or DEFAULT_RECORD_CONTEXT)
    )
    rules = EXPLICIT_ARRAY_RULES.format(expected_count=len(batch))
    return f"{prompt}\n{rules}\nThis slice is part of a larger array of {total_count} items; keep order."


def clean_response_text(response_text: str) -> str:
    """Strip surrounding whitespace and a wrapping Markdown code fence."""
    cleaned = response_text.strip()
    cleaned = _LEADING_FENCE.sub('', cleaned, count=1)
    cleaned = _TRAILING_FENCE.sub('', cleaned, count=1)
    return cleaned.strip()


def parse_translation_response(response_text: str, original_values: Optional[List[str]] = None) -> List[str]:
    """
    Parse a batch response into a list of strings.

    Items that are not strings (``null``, numbers, objects) are replaced by the
    original value at the same position, or by an empty string past its end.

    Args:
        response_text (str): The raw completion text.
        original_values (Optional[List[str]]): The batch that was sent.

    Raises:
        json.JSONDecodeError: If the response is not JSON at all.
        NonArrayResponseError: If the JSON is not an array.
    """
    parsed = json.loads(clean_response_text(response_text))
    try:
        jsonschema.validate(instance=parsed, schema=TRANSLATION_ARRAY_SCHEMA)
    except jsonschema.ValidationError as schema_exc:
        raise NonArrayResponseError(
            f"Translation response is not an array: {schema_exc.message}"
        ) from schema_exc

    original_values = original_values or []
    values: List[str] = []
    for index, item in enumerate(parsed):
        if isinstance(item, str):
            values.append(item)
            continue
        fallback = original_values[index] if index < len(original_values) else ''
        logger.warning(f"Non-string item at position {index} in translation response; keeping the original value")
        values.append(fallback)
    return values


def ensure_array_lengths_match(original_values: List[str], translated_values: List[str]) -> List[str]:
    """
    Force ``translated_values`` to the length of ``original_values``.

    A short list is padded with the original strings at the missing positions
    (whitespace-only originals become empty strings); a long list is truncated.
    """
    if len(original_values) == len(translated_values):
        return translated_values

    if len(translated_values) < len(original_values):
        padding = [
            '' if value.strip() == '' else value
            for value in original_values[len(translated_values):]
        ]
        return list(translated_values) + padding

    return list(translated_values[:len(original_values)])


def _max_tokens_for_batch(settings: AppConfig, batch: List[str]) -> int:
    # Translations can run longer than the source; leave room for that.
    estimated = count_tokens(json.dumps(batch, ensure_ascii=False), settings.model_name) * 2
    return max(settings.max_tokens or 0, estimated)


def require_client(settings: AppConfig) -> CompletionClient:
    if settings.completion_client is None:
        raise RuntimeError("No completion client configured (dry-run mode?)")
    return settings.completion_client


async def translate_text_values(
        text_values: List[str],
        settings: AppConfig,
        from_locale: str,
        to_locale: str,
        record_context: str = '',
        callbacks: Optional[StreamCallbacks] = None
) -> List[str]:
    """
    Translate a flat list of strings with the batch protocol.

    Batches run with bounded concurrency and are concatenated by batch index.
    A batch whose response is not JSON is skipped; the gap is filled from the
    originals by ``ensure_array_lengths_match``.

    Args:
        text_values (List[str]): Strings to translate, in order.
        settings (AppConfig): Configuration and completion client.
        from_locale (str): Source locale code.
        to_locale (str): Target locale code.
        record_context (str): Optional description of the record.
        callbacks (Optional[StreamCallbacks]): Progress hooks and cancellation.

    Returns:
        List[str]: Exactly ``len(text_values)`` strings.

    Raises:
        NonArrayResponseError: If any batch answered with non-array JSON.
    """
    client = require_client(settings)
    cancellation = callbacks.cancellation if callbacks else None
    from_locale_name = language_code_to_name(settings, from_locale)
    to_locale_name = language_code_to_name(settings, to_locale)

    batches = build_batches(text_values, settings.batch_char_limit)
    logger.debug(f"Translating {len(text_values)} text values in {len(batches)} batch(es)")
    semaphore = asyncio.Semaphore(max(1, settings.batch_concurrency))

    async def run_batch(batch_index: int, batch: List[str]) -> Optional[List[str]]:
        prompt = build_batch_prompt(
            settings.prompt_template,
            batch,
            len(text_values),
            from_locale_name,
            to_locale_name,
            record_context
        )
        messages: List[ChatMessage] = [{'role': 'user', 'content': prompt}]
        logger.debug(f"Batch {batch_index + 1}/{len(batches)} prompt:\n{prompt}")
        async with semaphore:
            response_text = await client.complete(
                messages,
                max_tokens=_max_tokens_for_batch(settings, batch),
                cancellation=cancellation
            )
        if callbacks is not None:
            callbacks.notify(response_text)
        logger.debug(f"Batch {batch_index + 1}/{len(batches)} response:\n{response_text}")

        try:
            return parse_translation_response(response_text, batch)
        except json.JSONDecodeError as json_exc:
            logger.error(f"Failed to parse translation response for batch {batch_index + 1}/{len(batches)} as JSON: {json_exc}")
            logger.debug(f"Raw response text:\n---\n{response_text}\n---")
            return None

    tasks = [asyncio.ensure_future(run_batch(i, batch)) for i, batch in enumerate(batches)]
    try:
        results = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        raise

    all_translated: List[str] = []
    for batch_index, translated in enumerate(results):
        if translated is None:
            logger.warning(f"Skipping batch {batch_index + 1}/{len(batches)}; its values stay untranslated")
            continue
        all_translated.extend(translated)

    if len(all_translated) != len(text_values):
        logger.warning(
            f"Translation mismatch: got {len(all_translated)} values, expected {len(text_values)}"
        )
        all_translated = ensure_array_lengths_match(text_values, all_translated)

    return all_translated


def chunk_text(text: str, size: int = 3000) -> List[str]:
    """Split ``text`` into consecutive slices of at most ``size`` characters."""
    return [text[i:i + size] for i in range(0, len(text), size)]


async def translate_large(
        messages_base: List[ChatMessage],
        text: str,
        settings: AppConfig,
        callbacks: Optional[StreamCallbacks] = None
) -> str:
    """
    Translate a long text in fixed-size chunks and join the results with newlines.

    Chunks are handled by a small worker pool (``chunk_concurrency``) with a
    pacing pause after each request; results are kept in chunk order.
    """
    client = require_client(settings)
    cancellation = callbacks.cancellation if callbacks else None
    parts = chunk_text(text, settings.chunk_size)
    out: List[str] = [''] * len(parts)
    pending = iter(enumerate(parts))

    async def worker() -> None:
        for idx, part in pending:
            messages = list(messages_base) + [
                {'role': 'user', 'content': f"Part {idx + 1}/{len(parts)}:\n{part}"}
            ]
            out[idx] = await client.complete(messages, cancellation=cancellation) or ''
            if callbacks is not None:
                callbacks.notify(out[idx])
            await asyncio.sleep(settings.chunk_pacing_seconds)

    workers = [asyncio.ensure_future(worker()) for _ in range(max(1, settings.chunk_concurrency))]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        # Stop the other workers from picking up more parts.
        for task in workers:
            task.cancel()
        raise
    return '\n'.join(out)
