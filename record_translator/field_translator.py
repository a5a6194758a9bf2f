"""
Generic field-value translation.

``translate_field_value`` dispatches on the field's editor type: structured
text goes to the structured-text translator, modular content (block lists) is
walked record by record, SEO and media objects have their text attributes
translated, and plain strings are sent as a single prompt (or in chunks when
they are long).
"""
import logging
import re
from typing import Any, Dict, List, Optional

from record_translator.app_config import AppConfig
from record_translator.batching import (
    DEFAULT_RECORD_CONTEXT,
    clean_response_text,
    language_code_to_name,
    require_client,
    translate_large
)
from record_translator.completion_client import StreamCallbacks
from record_translator.structured_text import translate_structured_text_value
from record_translator.text_nodes import classify_node, NodeKind

logger = logging.getLogger(__name__)

STRUCTURED_TEXT_FIELD_TYPE = 'structured_text'
MODULAR_CONTENT_VARIATIONS = ['framed_single_block', 'frameless_single_block', 'rich_text']
SEO_FIELD_TYPE = 'seo'
MEDIA_FIELD_TYPES = ('file', 'gallery')

SEO_TEXT_KEYS = ('title', 'description')
MEDIA_TEXT_KEYS = ('alt', 'title')

# Format hints appended to plain-text prompts, keyed by editor type.
FIELD_PROMPTS: Dict[str, str] = {
    'single_line': 'a single line of plain text, without line breaks or surrounding quotes.',
    'markdown': 'Markdown. Keep all Markdown syntax, link targets and code spans exactly as they are.',
    'wysiwyg': 'HTML. Keep every tag and attribute exactly as it is and translate only the text content.',
    'textarea': 'plain text. Keep the original line breaks.',
    'slug': 'a URL slug: lowercase words separated by hyphens, without spaces or accents.',
    'json': 'JSON. Keep the exact structure and keys and translate only string values.',
    'seo': 'plain text suitable for a page title or meta description.',
    'file': 'plain text suitable for an image alt text or title.',
    'gallery': 'plain text suitable for an image alt text or title.',
}

_HTML_TAG = re.compile(r'<[a-zA-Z][^>]*>')
_URL_ONLY = re.compile(r'^(https?://|mailto:)\S+$')
_WHITESPACE = re.compile(r'\s')

# Block item type id -> {field api key -> editor type}.
FieldTypeMap = Dict[str, Dict[str, str]]


def build_field_type_prompt(field_type: str) -> str:
    """Return the format hint for a field type, or an empty string when none applies."""
    if field_type in (STRUCTURED_TEXT_FIELD_TYPE, *MODULAR_CONTENT_VARIATIONS):
        return ''
    hint = FIELD_PROMPTS.get(field_type)
    if not hint:
        return ''
    return f"Return the response in the format of {hint}"


def clean_translated_text(translated_text: str, original_text: str) -> str:
    """
    Cleans the translated text by removing a code fence and wrapping quotes or
    brackets that the original text did not have.

    Args:
        translated_text (str): The translated text.
        original_text (str): The original text.

    Returns:
        str: The cleaned translated text.
    """
    translated_text = clean_response_text(translated_text)
    if len(translated_text) >= 2 and translated_text.startswith('"') and translated_text.endswith('"') and not (
            original_text.startswith('"') and original_text.endswith('"')):
        translated_text = translated_text[1:-1]
    if len(translated_text) >= 2 and translated_text.startswith('[') and translated_text.endswith(']') and not (
            original_text.startswith('[') and original_text.endswith(']')):
        translated_text = translated_text[1:-1]
    return translated_text


def generate_record_context(form_values: Dict[str, Any], source_locale: str, max_entries: int = 5,
                            max_value_length: int = 300) -> str:
    """
    Build a short description of the record from its source-locale values.

    Only short plain strings are used; long texts and structured values would
    bloat every prompt.

    Args:
        form_values: Form values keyed by field api key (then locale for localized fields).
        source_locale: The locale to read values from.
        max_entries: Maximum number of values to include.
        max_value_length: Longest value that is still included.

    Returns:
        str: The context text, or an empty string when nothing usable was found.
    """
    entries: List[str] = []
    for api_key, field_value in (form_values or {}).items():
        if isinstance(field_value, dict):
            field_value = field_value.get(source_locale)
        if not isinstance(field_value, str):
            continue
        text = field_value.strip()
        if not text or len(text) > max_value_length or _URL_ONLY.match(text):
            continue
        entries.append(f"- {api_key}: {text}")
        if len(entries) >= max_entries:
            break

    if not entries:
        return ''
    return "Record context: the record being translated contains these values:\n" + "\n".join(entries)


def _build_text_prompt(settings: AppConfig, field_value_text: str, from_locale: str, to_locale: str,
                       record_context: str, field_type_prompt: str) -> str:
    prompt = (
        settings.prompt_template
        .replace('{fieldValue}', field_value_text)
        .replace('{fromLocale}', language_code_to_name(settings, from_locale))
        .replace('{toLocale}', language_code_to_name(settings, to_locale))
        .replace('{recordContext}', record_context or DEFAULT_RECORD_CONTEXT)
    )
    if field_type_prompt:
        prompt = f"{prompt}\n{field_type_prompt}"
    return prompt


async def translate_text_value(
        text: str,
        settings: AppConfig,
        to_locale: str,
        from_locale: str,
        field_type_prompt: str = '',
        callbacks: Optional[StreamCallbacks] = None,
        record_context: str = ''
) -> str:
    """
    Translate one plain string.

    Texts longer than ``chunk_size`` are translated in parts with
    ``translate_large``. Whitespace-only texts and empty answers leave the
    original untouched.
    """
    if not text.strip():
        return text

    client = require_client(settings)

    if len(text) > settings.chunk_size:
        logger.info(f"Text of {len(text)} characters exceeds chunk size {settings.chunk_size}; translating in parts")
        system_prompt = _build_text_prompt(
            settings,
            'the text sent in the following numbered parts. Translate each part on its own and return only its translation',
            from_locale,
            to_locale,
            record_context,
            field_type_prompt
        )
        translated = await translate_large([{'role': 'system', 'content': system_prompt}], text, settings, callbacks)
    else:
        prompt = _build_text_prompt(settings, text, from_locale, to_locale, record_context, field_type_prompt)
        translated = await client.complete(
            [{'role': 'user', 'content': prompt}],
            cancellation=callbacks.cancellation if callbacks else None
        )
        if callbacks is not None:
            callbacks.notify(translated)

    translated = clean_translated_text(translated, text)
    if not translated.strip():
        logger.warning("Empty translation received; keeping the original text")
        return text
    return translated


def infer_field_type(value: Any) -> Optional[str]:
    """
    Guess the editor type of a block attribute from the shape of its value.

    Used only when the block's item type has no field metadata. Strings are
    treated as text only when they look like prose: single tokens (enum
    values, record ids, slugs, colour codes) and URLs are left alone.

    Returns None for values that carry nothing to translate.
    """
    if isinstance(value, str):
        text = value.strip()
        if not text or _URL_ONLY.match(text):
            return None
        if _HTML_TAG.search(value):
            return 'wysiwyg'
        if not _WHITESPACE.search(text):
            return None
        return 'textarea' if '\n' in value else 'single_line'

    if isinstance(value, dict):
        if isinstance(value.get('document'), dict):
            return STRUCTURED_TEXT_FIELD_TYPE
        if isinstance(value.get('attributes'), dict) or isinstance(value.get('item'), dict):
            return 'rich_text'
        if any(isinstance(value.get(key), str) for key in SEO_TEXT_KEYS) and 'upload_id' not in value:
            return SEO_FIELD_TYPE
        if 'upload_id' in value:
            return 'file'
        return None

    if isinstance(value, list) and value and all(isinstance(item, dict) for item in value):
        first = value[0]
        if first.get('type') in ('item', 'block') or isinstance(first.get('attributes'), dict):
            return 'rich_text'
        if 'upload_id' in first:
            return 'gallery'
        if any(classify_node(item) is NodeKind.TEXT for item in value):
            return STRUCTURED_TEXT_FIELD_TYPE
    return None


def is_editor_translatable(editor: str, translation_fields: List[str]) -> bool:
    """
    Whether fields edited with ``editor`` are translated.

    Enabling ``rich_text`` also enables the single-block variations and
    enabling ``file`` also enables galleries.
    """
    if editor in translation_fields:
        return True
    if 'rich_text' in translation_fields and editor in MODULAR_CONTENT_VARIATIONS:
        return True
    return 'file' in translation_fields and editor == 'gallery'


def _block_item_type_id(block: Dict[str, Any]) -> Optional[str]:
    item_type = ((block.get('relationships') or {}).get('item_type') or {}).get('data')
    if item_type is None:
        item_type = block.get('item_type')
    if isinstance(item_type, dict):
        item_type = item_type.get('id')
    return str(item_type) if item_type is not None else None


def _attribute_field_type(api_key: str, attribute_value: Any, settings: AppConfig,
                          editors: Optional[Dict[str, str]]) -> Optional[str]:
    if editors is None:
        return infer_field_type(attribute_value)
    editor = editors.get(api_key)
    if editor is None or not is_editor_translatable(editor, settings.translation_fields):
        return None
    return editor


async def _translate_attributes(attributes: Dict[str, Any], settings: AppConfig, to_locale: str, from_locale: str,
                                callbacks: Optional[StreamCallbacks], record_context: str,
                                depth: int, editors: Optional[Dict[str, str]],
                                field_types: Optional[FieldTypeMap]) -> Dict[str, Any]:
    translated: Dict[str, Any] = {}
    for api_key, attribute_value in attributes.items():
        attribute_type = _attribute_field_type(api_key, attribute_value, settings, editors)
        if attribute_type is None:
            translated[api_key] = attribute_value
            continue
        translated[api_key] = await translate_field_value(
            attribute_value,
            settings,
            to_locale,
            from_locale,
            attribute_type,
            build_field_type_prompt(attribute_type),
            callbacks,
            record_context,
            depth + 1,
            field_types
        )
    return translated


async def _translate_block(block: Any, settings: AppConfig, to_locale: str, from_locale: str,
                           callbacks: Optional[StreamCallbacks], record_context: str, depth: int,
                           field_types: Optional[FieldTypeMap]) -> Any:
    if not isinstance(block, dict):
        return block

    # Structural keys (type, id, item_type, relationships, originalIndex, ...) pass through.
    translated = dict(block)
    item = block.get('item')
    if isinstance(item, dict):
        translated['item'] = await _translate_block(
            item, settings, to_locale, from_locale, callbacks, record_context, depth + 1, field_types
        )
    attributes = block.get('attributes')
    if isinstance(attributes, dict):
        item_type_id = _block_item_type_id(block)
        editors = (field_types or {}).get(item_type_id) if item_type_id is not None else None
        if editors is None:
            logger.debug(f"No field metadata for block item type '{item_type_id}'; inferring attribute types")
        translated['attributes'] = await _translate_attributes(
            attributes, settings, to_locale, from_locale, callbacks, record_context, depth, editors, field_types
        )
    return translated


async def translate_block_value(value: Any, settings: AppConfig, to_locale: str, from_locale: str,
                                callbacks: Optional[StreamCallbacks] = None, record_context: str = '',
                                depth: int = 0, field_types: Optional[FieldTypeMap] = None) -> Any:
    """
    Translate a modular-content value: one block record or a list of them.

    ``field_types`` maps block item type ids to ``{api_key: editor}``. Attributes
    of a known item type are translated by their editor; unknown item types
    fall back to ``infer_field_type``.
    """
    if isinstance(value, list):
        logger.info(f"Translating {len(value)} block(s)")
        return [
            await _translate_block(block, settings, to_locale, from_locale, callbacks, record_context, depth,
                                   field_types)
            for block in value
        ]
    return await _translate_block(value, settings, to_locale, from_locale, callbacks, record_context, depth,
                                  field_types)


async def _translate_text_keys(obj: Dict[str, Any], keys, settings: AppConfig, to_locale: str, from_locale: str,
                               field_type: str, callbacks: Optional[StreamCallbacks],
                               record_context: str) -> Dict[str, Any]:
    translated = dict(obj)
    for key in keys:
        text = obj.get(key)
        if isinstance(text, str) and text.strip():
            translated[key] = await translate_text_value(
                text, settings, to_locale, from_locale, build_field_type_prompt(field_type), callbacks, record_context
            )
    return translated


async def translate_field_value(
        value: Any,
        settings: AppConfig,
        to_locale: str,
        from_locale: str,
        field_type: str,
        field_type_prompt: str = '',
        callbacks: Optional[StreamCallbacks] = None,
        record_context: str = '',
        depth: int = 0,
        field_types: Optional[FieldTypeMap] = None
) -> Any:
    """
    Translate a field value according to its editor type.

    Args:
        value: The source-locale field value.
        settings (AppConfig): Configuration and completion client.
        to_locale (str): Target locale code.
        from_locale (str): Source locale code.
        field_type (str): Editor type (e.g. 'single_line', 'structured_text', 'rich_text').
        field_type_prompt (str): Format hint appended to plain-text prompts.
        callbacks (Optional[StreamCallbacks]): Progress hooks and cancellation.
        record_context (str): Optional description of the record.
        depth (int): Recursion depth; values nested deeper than ``max_depth`` are left as they are.
        field_types (Optional[FieldTypeMap]): Block item type id to ``{api_key: editor}``, used
            to decide which block attributes are translated.

    Returns:
        The translated value, shaped like the input.
    """
    if depth > settings.max_depth:
        logger.warning(f"Maximum nesting depth {settings.max_depth} exceeded for '{field_type}' value; leaving it untranslated")
        return value

    if value is None or value == '' or value == [] or value == {}:
        return value

    if field_type == STRUCTURED_TEXT_FIELD_TYPE:
        return await translate_structured_text_value(
            value, settings, to_locale, from_locale, callbacks, record_context, depth, field_types
        )

    if field_type in MODULAR_CONTENT_VARIATIONS:
        return await translate_block_value(
            value, settings, to_locale, from_locale, callbacks, record_context, depth, field_types
        )

    if field_type == SEO_FIELD_TYPE and isinstance(value, dict):
        return await _translate_text_keys(
            value, SEO_TEXT_KEYS, settings, to_locale, from_locale, field_type, callbacks, record_context
        )

    if field_type in MEDIA_FIELD_TYPES:
        if isinstance(value, list):
            return [
                await _translate_text_keys(
                    media, MEDIA_TEXT_KEYS, settings, to_locale, from_locale, field_type, callbacks, record_context
                ) if isinstance(media, dict) else media
                for media in value
            ]
        if isinstance(value, dict):
            return await _translate_text_keys(
                value, MEDIA_TEXT_KEYS, settings, to_locale, from_locale, field_type, callbacks, record_context
            )
        return value

    if isinstance(value, str):
        return await translate_text_value(
            value,
            settings,
            to_locale,
            from_locale,
            field_type_prompt or build_field_type_prompt(field_type),
            callbacks,
            record_context
        )

    logger.info(f"Field type '{field_type}' with a {type(value).__name__} value has nothing to translate")
    return value
