"""
Translation of structured text (DAST) field values.

Inline text is extracted, translated with the batch protocol and put back in
place. Embedded block nodes are pulled out first, translated as one unit by the
generic field translator, and spliced back at their original positions.
"""
import logging
from typing import Any, Dict, List, Optional

from record_translator.app_config import AppConfig
from record_translator.batching import NonArrayResponseError, translate_text_values
from record_translator.completion_client import StreamCallbacks, TranslationCancelledError
from record_translator.text_nodes import (
    NodeKind,
    ORIGINAL_INDEX_KEY,
    classify_node,
    extract_text_values,
    insert_object_at_index,
    reconstruct_object,
    remove_ids,
    strip_original_index
)

logger = logging.getLogger(__name__)

# Field type used for the recursive block translation.
BLOCK_LIST_FIELD_TYPE = 'rich_text'


def _unwrap_document(value: Any):
    """Return ``(nodes, enveloped)`` for a bare node list or a ``{document: {children}}`` envelope."""
    if isinstance(value, dict):
        document = value.get('document')
        if isinstance(document, dict) and isinstance(document.get('children'), list):
            return document['children'], True
    return value, False


def _wrap_document(nodes: List[Any]) -> Dict[str, Any]:
    return {
        'document': {
            'children': nodes,
            'type': 'root'
        },
        'schema': 'dast'
    }


async def translate_structured_text_value(
        initial_value: Any,
        settings: AppConfig,
        to_locale: str,
        from_locale: str,
        callbacks: Optional[StreamCallbacks] = None,
        record_context: str = '',
        depth: int = 0,
        field_types: Optional[Dict[str, Dict[str, str]]] = None
) -> Any:
    """
    Translate a structured text value while preserving its structure.

    Args:
        initial_value: A list of DAST nodes, or the ``{document, schema}`` envelope.
        settings (AppConfig): Configuration and completion client.
        to_locale (str): Target locale code.
        from_locale (str): Source locale code.
        callbacks (Optional[StreamCallbacks]): Progress hooks and cancellation.
        record_context (str): Optional description of the record.
        depth (int): Current recursion depth through block translation.
        field_types: Block item type id to ``{api_key: editor}`` for the embedded blocks.

    Returns:
        The translated value in the same shape as the input, or the original
        value when it is empty or translation fails.

    Raises:
        TranslationCancelledError: If the job was cancelled mid-translation.
    """
    # Imported here: field_translator dispatches back into this module.
    from record_translator.field_translator import translate_field_value

    nodes, enveloped = _unwrap_document(initial_value)

    if not nodes or not isinstance(nodes, list):
        logger.info(f"Invalid or empty structured text value, skipping: {type(nodes).__name__}")
        return initial_value

    logger.info(f"Translating structured text field ({len(nodes)} nodes) to '{to_locale}'")

    try:
        no_id_nodes = remove_ids(nodes)

        block_nodes: List[Dict[str, Any]] = []
        inline_nodes: List[Any] = []
        for index, node in enumerate(no_id_nodes):
            if classify_node(node) is NodeKind.BLOCK:
                block_nodes.append({**node, ORIGINAL_INDEX_KEY: index})
            else:
                inline_nodes.append(node)

        text_values = extract_text_values(inline_nodes)

        if not text_values and not block_nodes:
            logger.info("No text values found to translate")
            return initial_value

        if text_values:
            logger.info(f"Found {len(text_values)} text nodes to translate")
            translated_values = await translate_text_values(
                text_values,
                settings,
                from_locale,
                to_locale,
                record_context,
                callbacks
            )
            reconstructed = reconstruct_object(inline_nodes, translated_values)
        else:
            logger.info("Structured text contains only block nodes")
            reconstructed = inline_nodes

        if block_nodes:
            logger.info(f"Translating {len(block_nodes)} block nodes")
            translated_blocks = await translate_field_value(
                block_nodes,
                settings,
                to_locale,
                from_locale,
                BLOCK_LIST_FIELD_TYPE,
                '',
                callbacks,
                record_context,
                depth + 1,
                field_types
            )
            placed = [
                node for node in translated_blocks
                if isinstance(node, dict) and isinstance(node.get(ORIGINAL_INDEX_KEY), int)
            ]
            for node in sorted(placed, key=lambda n: n[ORIGINAL_INDEX_KEY]):
                reconstructed = insert_object_at_index(reconstructed, node, node[ORIGINAL_INDEX_KEY])

        result = strip_original_index(reconstructed)
    except TranslationCancelledError:
        raise
    except NonArrayResponseError as exc:
        logger.warning(f"Translation response is not an array, keeping the original value: {exc}")
        return initial_value
    except Exception as exc:
        logger.error(f"Error during structured text translation: {exc.__class__.__name__} - {exc}", exc_info=True)
        return initial_value

    logger.info("Successfully translated structured text")
    if enveloped:
        return _wrap_document(result)
    return result
