"""Unit tests for the batch translation protocol."""
import asyncio
import json
import unittest

import pytest

from fakes import ScriptedCompletionClient, extract_prompt_array, make_settings
from record_translator.batching import (
    NonArrayResponseError,
    build_batch_prompt,
    build_batches,
    chunk_text,
    clean_response_text,
    ensure_array_lengths_match,
    language_code_to_name,
    parse_translation_response,
    translate_large,
    translate_text_values
)
from record_translator.completion_client import (
    CancellationToken,
    CompletionError,
    StreamCallbacks,
    TranslationCancelledError
)


class TestBuildBatches:

    def test_splits_before_the_overflowing_item(self):
        values = ['a' * 3000, 'b' * 2000, 'c' * 100]
        assert build_batches(values, 4800) == [['a' * 3000], ['b' * 2000, 'c' * 100]]

    def test_oversized_item_gets_its_own_batch(self):
        values = ['x' * 6000, 'y']
        assert build_batches(values, 4800) == [['x' * 6000], ['y']]

    def test_batches_cover_every_item_in_order(self):
        values = [f"value {i} " * (i % 7) for i in range(200)]
        batches = build_batches(values, 300)
        assert all(batches)
        assert [value for batch in batches for value in batch] == values

    def test_empty_strings_stay_in_their_batch(self):
        assert build_batches(['', 'hello', ''], 4800) == [['', 'hello', '']]

    def test_empty_input(self):
        assert build_batches([], 4800) == []


class TestLengthReconciliation:

    def test_pads_with_original_tail(self):
        assert ensure_array_lengths_match(['a', 'b', 'c'], ['x', 'y']) == ['x', 'y', 'c']

    def test_truncates_surplus(self):
        assert ensure_array_lengths_match(['a', 'b', 'c'], ['x', 'y', 'z', 'w']) == ['x', 'y', 'z']

    def test_whitespace_only_originals_pad_as_empty(self):
        assert ensure_array_lengths_match(['a', '  ', 'c'], ['x']) == ['x', '', 'c']

    def test_equal_lengths_unchanged(self):
        translated = ['x', '', 'z']
        assert ensure_array_lengths_match(['a', '', 'c'], translated) is translated


class TestParseTranslationResponse:

    def test_plain_array(self):
        assert parse_translation_response('["Hallo", ""]') == ['Hallo', '']

    def test_json_code_fence_is_stripped(self):
        assert parse_translation_response('```json\n["Hallo", "Welt"]\n```') == ['Hallo', 'Welt']

    def test_bare_code_fence_is_stripped(self):
        assert parse_translation_response('  ```\n["Hallo"]\n```  ') == ['Hallo']

    def test_non_json_raises_decode_error(self):
        with pytest.raises(json.JSONDecodeError):
            parse_translation_response('not json')

    def test_object_is_rejected(self):
        with pytest.raises(NonArrayResponseError):
            parse_translation_response('{"translations": ["Hallo"]}')

    def test_non_string_items_fall_back_to_originals(self):
        assert parse_translation_response('["Hallo", null, 3]', ['Hello', 'World', 'x']) == ['Hallo', 'World', 'x']

    def test_non_string_item_past_the_originals_becomes_empty(self):
        assert parse_translation_response('["Hallo", {"a": 1}]', ['Hello']) == ['Hallo', '']

    def test_clean_response_text_leaves_plain_text_alone(self):
        assert clean_response_text('  Hallo Welt \n') == 'Hallo Welt'


class TestPromptConstruction:

    def test_prompt_contains_slice_names_and_rules(self):
        prompt = build_batch_prompt(
            "From {fromLocale} to {toLocale}: {fieldValue}\n{recordContext}",
            ['', 'Hello'],
            7,
            'English',
            'German'
        )
        assert extract_prompt_array(prompt) == ['', 'Hello']
        assert 'From English to German' in prompt
        assert 'EXACTLY 2 elements' in prompt
        assert 'Preserve ALL empty strings' in prompt
        assert 'larger array of 7 items; keep order' in prompt
        assert 'Record context: No additional context available.' in prompt

    def test_record_context_is_substituted(self):
        prompt = build_batch_prompt('{recordContext}', ['a'], 1, 'English', 'German', 'Record context: shoes')
        assert prompt.startswith('Record context: shoes')

    def test_language_code_to_name(self):
        settings = make_settings()
        assert language_code_to_name(settings, 'de') == 'German'
        assert language_code_to_name(settings, 'de-CH') == 'German'
        assert language_code_to_name(settings, 'pt-BR') == 'pt-BR'

    def test_chunk_text(self):
        assert chunk_text('abcdefg', 3) == ['abc', 'def', 'g']
        assert chunk_text('', 3) == []


def test_translate_text_values_with_default_fixtures(settings, scripted_client):
    result = asyncio.run(translate_text_values(['Hello', '', 'world'], settings, 'en', 'fr'))

    assert result == ['HELLO', '', 'WORLD']
    assert scripted_client.prompts[0].startswith('English>French|')


class TestTranslateTextValues(unittest.IsolatedAsyncioTestCase):

    async def test_batches_are_concatenated_in_order(self):
        client = ScriptedCompletionClient()
        settings = make_settings(client, batch_char_limit=1, batch_concurrency=3)

        result = await translate_text_values(['a', 'b', 'c', 'd'], settings, 'en', 'de')

        self.assertEqual(result, ['A', 'B', 'C', 'D'])
        self.assertEqual(len(client.calls), 4)

    async def test_unparseable_batch_is_skipped_and_padded(self):
        client = ScriptedCompletionClient(responses=['["X"]', 'not json', '["Z"]'])
        settings = make_settings(client, batch_char_limit=1, batch_concurrency=1)

        result = await translate_text_values(['a', 'b', 'c'], settings, 'en', 'de')

        # The skipped batch shifts later values; reconciliation restores the length.
        self.assertEqual(result, ['X', 'Z', 'c'])

    async def test_short_response_is_padded_with_originals(self):
        client = ScriptedCompletionClient(responses=['["x", "y"]'])
        settings = make_settings(client)

        result = await translate_text_values(['a', 'b', 'c'], settings, 'en', 'de')

        self.assertEqual(result, ['x', 'y', 'c'])

    async def test_long_response_is_truncated(self):
        client = ScriptedCompletionClient(responses=['["x", "y", "z", "w"]'])
        settings = make_settings(client)

        result = await translate_text_values(['a', 'b', 'c'], settings, 'en', 'de')

        self.assertEqual(result, ['x', 'y', 'z'])

    async def test_non_array_response_aborts(self):
        client = ScriptedCompletionClient(responses=['{"a": "b"}'])
        settings = make_settings(client)

        with self.assertRaises(NonArrayResponseError):
            await translate_text_values(['a'], settings, 'en', 'de')

    async def test_null_item_keeps_its_original(self):
        client = ScriptedCompletionClient(responses=['["X", null]'])
        settings = make_settings(client)

        result = await translate_text_values(['a', 'b'], settings, 'en', 'de')

        self.assertEqual(result, ['X', 'b'])

    async def test_empty_strings_are_sent_and_kept(self):
        client = ScriptedCompletionClient()
        settings = make_settings(client)

        result = await translate_text_values(['', 'hello', ''], settings, 'en', 'de')

        self.assertEqual(result, ['', 'HELLO', ''])
        self.assertEqual(extract_prompt_array(client.prompts[0]), ['', 'hello', ''])

    async def test_stream_callbacks_fire_per_batch(self):
        client = ScriptedCompletionClient()
        settings = make_settings(client, batch_char_limit=1)
        streamed = []
        completed = []
        callbacks = StreamCallbacks(on_stream=streamed.append, on_complete=lambda: completed.append(True))

        await translate_text_values(['a', 'b'], settings, 'en', 'de', callbacks=callbacks)

        self.assertEqual(len(streamed), 2)
        self.assertEqual(len(completed), 2)

    async def test_cancelled_before_start_issues_no_request(self):
        client = ScriptedCompletionClient()
        settings = make_settings(client)
        token = CancellationToken()
        token.cancel()

        with self.assertRaises(TranslationCancelledError):
            await translate_text_values(['a'], settings, 'en', 'de', callbacks=StreamCallbacks(cancellation=token))
        self.assertEqual(client.calls, [])

    async def test_max_tokens_never_below_configured_cap(self):
        client = ScriptedCompletionClient()
        settings = make_settings(client, max_tokens=800)

        await translate_text_values(['a'], settings, 'en', 'de')

        self.assertGreaterEqual(client.max_tokens_seen[0], 800)


class FailFirstCompletionClient(ScriptedCompletionClient):
    """Fails the first request outright; later requests are slow."""

    async def _request(self, messages, model, max_tokens):
        self.calls.append(messages)
        if len(self.calls) == 1:
            raise CompletionError('boom', 400)
        await asyncio.sleep(0.05)
        return messages[-1]['content']


class TestTranslateLarge(unittest.IsolatedAsyncioTestCase):

    async def test_chunks_are_joined_in_order(self):
        client = ScriptedCompletionClient()
        settings = make_settings(client, chunk_size=4, chunk_concurrency=2)

        result = await translate_large([{'role': 'system', 'content': 'translate'}], 'abcdefghij', settings)

        self.assertEqual(result, 'ABCD\nEFGH\nIJ')
        self.assertEqual(len(client.calls), 3)
        self.assertTrue(all(call[0]['content'] == 'translate' for call in client.calls))
        self.assertIn('Part 1/3:', [call[-1]['content'].split('\n')[0] for call in client.calls])

    async def test_failed_chunk_stops_the_other_workers(self):
        client = FailFirstCompletionClient()
        settings = make_settings(client, chunk_size=2, chunk_concurrency=2)

        with self.assertRaises(CompletionError):
            await translate_large([{'role': 'system', 'content': 'translate'}], 'abcdefghij', settings)
        await asyncio.sleep(0.2)

        # The first chunk failed while the second was in flight; no further chunk was requested.
        self.assertLessEqual(len(client.calls), 2)


if __name__ == '__main__':
    unittest.main()
