import unittest

from fakes import ScriptedCompletionClient, make_settings
from record_translator.completion_client import (
    CancellationToken,
    CompletionError,
    StreamCallbacks,
    TranslationCancelledError
)
from record_translator.structured_text import translate_structured_text_value


def paragraph(*texts):
    return {'type': 'paragraph', 'children': [{'type': 'span', 'value': text} for text in texts]}


def block(title, block_id):
    return {
        'type': 'block',
        'id': block_id,
        'item': {
            'type': 'item',
            'attributes': {'title': title, 'image_url': 'https://cdn.example.com/a.png'},
            'relationships': {'item_type': {'data': {'id': 'cta', 'type': 'item_type'}}}
        }
    }


class TestTranslateStructuredTextValue(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.client = ScriptedCompletionClient()
        self.settings = make_settings(self.client)

    async def test_bare_node_list(self):
        value = [paragraph('Hello ', 'world'), {'type': 'heading', 'level': 2, 'children': [{'type': 'span', 'value': 'Intro'}]}]

        result = await translate_structured_text_value(value, self.settings, 'de', 'en')

        self.assertEqual(result, [paragraph('HELLO ', 'WORLD'), {'type': 'heading', 'level': 2, 'children': [{'type': 'span', 'value': 'INTRO'}]}])
        self.assertEqual(len(self.client.calls), 1)

    async def test_envelope_is_preserved(self):
        value = {'schema': 'dast', 'document': {'type': 'root', 'children': [paragraph('Hi')]}}

        result = await translate_structured_text_value(value, self.settings, 'de', 'en')

        self.assertEqual(result, {'document': {'children': [paragraph('HI')], 'type': 'root'}, 'schema': 'dast'})

    async def test_ids_are_removed(self):
        value = [{'type': 'paragraph', 'id': 'p1', 'children': [{'type': 'span', 'id': 's1', 'value': 'Hi'}]}]

        result = await translate_structured_text_value(value, self.settings, 'de', 'en')

        self.assertEqual(result, [paragraph('HI')])

    async def test_blocks_return_to_their_positions(self):
        value = [paragraph('one'), block('First offer', 'b1'), paragraph('two'), block('Second offer', 'b2')]

        result = await translate_structured_text_value(value, self.settings, 'de', 'en')

        self.assertEqual([node['type'] for node in result], ['paragraph', 'block', 'paragraph', 'block'])
        self.assertEqual(result[0], paragraph('ONE'))
        self.assertEqual(result[2], paragraph('TWO'))
        self.assertEqual(result[1]['item']['attributes']['title'], 'FIRST OFFER')
        self.assertEqual(result[3]['item']['attributes']['title'], 'SECOND OFFER')
        self.assertEqual(result[1]['item']['attributes']['image_url'], 'https://cdn.example.com/a.png')
        self.assertEqual(result[1]['item']['relationships']['item_type']['data']['id'], 'cta')
        for node in result:
            self.assertNotIn('originalIndex', node)
            self.assertNotIn('id', node)

    async def test_block_only_document_still_translates_blocks(self):
        value = [block('Standing alone', 'b1')]

        result = await translate_structured_text_value(value, self.settings, 'de', 'en')

        self.assertEqual(len(result), 1)
        self.assertEqual(result[0]['item']['attributes']['title'], 'STANDING ALONE')

    async def test_block_attributes_use_field_metadata(self):
        value = [paragraph('one'), block('go', 'b1')]
        value[1]['item']['attributes']['style'] = 'primary'
        field_types = {'cta': {'title': 'single_line', 'image_url': 'string', 'style': 'string_select'}}

        result = await translate_structured_text_value(value, self.settings, 'de', 'en', field_types=field_types)

        attributes = result[1]['item']['attributes']
        self.assertEqual(attributes['title'], 'GO')
        self.assertEqual(attributes['style'], 'primary')
        self.assertEqual(attributes['image_url'], 'https://cdn.example.com/a.png')

    async def test_link_meta_survives_translation(self):
        meta = [{'id': 'rel', 'value': 'nofollow'}, {'id': 'target', 'value': '_blank'}]
        value = [{'type': 'paragraph', 'children': [
            {'type': 'link', 'url': 'https://example.com', 'meta': meta, 'children': [{'type': 'span', 'value': 'click'}]}
        ]}]

        result = await translate_structured_text_value(value, self.settings, 'de', 'en')

        link = result[0]['children'][0]
        self.assertEqual(link['meta'], meta)
        self.assertEqual(link['children'], [{'type': 'span', 'value': 'CLICK'}])
        self.assertEqual(link['url'], 'https://example.com')
        self.assertEqual(len(self.client.calls), 1)

    async def test_document_without_text_is_returned_unchanged(self):
        value = [{'type': 'thematicBreak'}]

        result = await translate_structured_text_value(value, self.settings, 'de', 'en')

        self.assertIs(result, value)
        self.assertEqual(self.client.calls, [])

    async def test_invalid_values_are_returned_unchanged(self):
        for value in (None, [], 'plain text', {'foo': 1}, {'document': {'children': []}}):
            with self.subTest(value=value):
                self.assertIs(await translate_structured_text_value(value, self.settings, 'de', 'en'), value)
        self.assertEqual(self.client.calls, [])

    async def test_unparseable_response_keeps_original_texts(self):
        client = ScriptedCompletionClient(responses=['Sorry, I cannot help with that.'])
        value = [paragraph('Hello', 'world')]

        result = await translate_structured_text_value(value, make_settings(client), 'de', 'en')

        self.assertEqual(result, [paragraph('Hello', 'world')])

    async def test_non_array_response_returns_the_original(self):
        client = ScriptedCompletionClient(responses=['{"translations": ["Hallo"]}'])
        value = [paragraph('Hello')]

        with self.assertLogs('record_translator.structured_text', level='WARNING'):
            result = await translate_structured_text_value(value, make_settings(client), 'de', 'en')

        self.assertIs(result, value)

    async def test_completion_failure_returns_the_original(self):
        client = ScriptedCompletionClient(responses=[CompletionError('Proxy error 400: bad request', status_code=400)])
        value = [paragraph('Hello')]

        with self.assertLogs('record_translator.structured_text', level='ERROR'):
            result = await translate_structured_text_value(value, make_settings(client), 'de', 'en')

        self.assertIs(result, value)

    async def test_cancellation_propagates(self):
        token = CancellationToken()
        token.cancel()

        with self.assertRaises(TranslationCancelledError):
            await translate_structured_text_value(
                [paragraph('Hello')], self.settings, 'de', 'en', callbacks=StreamCallbacks(cancellation=token)
            )
        self.assertEqual(self.client.calls, [])

    async def test_record_context_reaches_the_prompt(self):
        await translate_structured_text_value(
            [paragraph('Hello')], self.settings, 'de', 'en', record_context='Record context: sneakers'
        )

        self.assertIn('Record context: sneakers', self.client.prompts[0])


if __name__ == '__main__':
    unittest.main()
