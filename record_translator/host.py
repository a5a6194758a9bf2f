"""Host-side access to a record: field metadata, form values and field writes."""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class FieldMeta:
    """Metadata of one field of the record's item type."""
    id: str
    api_key: str
    editor: str
    localized: bool = False
    label: str = ''
    item_type_id: Optional[str] = None

    @property
    def display_label(self) -> str:
        return self.label or self.api_key

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FieldMeta':
        """
        Build field metadata from either the CMS's JSON:API field resource
        (``{"id", "attributes": {...}, "relationships": {...}}``) or a flat dict.
        """
        if isinstance(data.get('attributes'), dict):
            attributes = data['attributes']
            appearance = attributes.get('appearance') or {}
            item_type = ((data.get('relationships') or {}).get('item_type') or {}).get('data') or {}
            return cls(
                id=str(data.get('id', '')),
                api_key=attributes.get('api_key', ''),
                editor=appearance.get('editor', ''),
                localized=bool(attributes.get('localized', False)),
                label=attributes.get('label') or '',
                item_type_id=str(item_type['id']) if item_type.get('id') is not None else None,
            )
        return cls(
            id=str(data.get('id', '')),
            api_key=data.get('api_key', ''),
            editor=data.get('editor', ''),
            localized=bool(data.get('localized', False)),
            label=data.get('label') or '',
            item_type_id=str(data['item_type_id']) if data.get('item_type_id') is not None else None,
        )


class FieldHost(ABC):
    """The editor a record is being translated in."""

    def __init__(self, item_type_id: str, fields: List[FieldMeta], form_values: Dict[str, Any],
                 access_token: str = '', environment: str = 'main'):
        self.item_type_id = item_type_id
        self.fields = fields
        self.form_values = form_values
        self.access_token = access_token
        self.environment = environment

    def record_fields(self) -> List[FieldMeta]:
        """Fields of the record's own item type (fields without an item type are included)."""
        return [
            field_meta for field_meta in self.fields
            if field_meta.item_type_id is None or field_meta.item_type_id == self.item_type_id
        ]

    def field_editors_by_item_type(self) -> Dict[str, Dict[str, str]]:
        """
        Map every item type with known fields to ``{api_key: editor}``.

        Block item types appear here when their fields are part of ``fields``;
        the block translator uses this to pick which block attributes are text.
        """
        editors: Dict[str, Dict[str, str]] = {}
        for field_meta in self.fields:
            if field_meta.item_type_id is None:
                continue
            editors.setdefault(field_meta.item_type_id, {})[field_meta.api_key] = field_meta.editor
        return editors

    @abstractmethod
    async def set_field_value(self, path: str, value: Any) -> None:
        """Write ``value`` at ``path`` (``"<api_key>.<locale>"``)."""

    def notify(self, kind: str, message: str) -> None:
        """Show a transient notification; ``kind`` is 'notice' or 'warning'."""
        if kind == 'warning':
            logger.warning(message)
        else:
            logger.info(message)


class JsonRecordHost(FieldHost):
    """
    Host backed by a record export file.

    The file holds ``item_type_id``, ``environment``, ``fields`` (field
    resources) and ``values`` (form values keyed by api key, then locale).
    """

    def __init__(self, item_type_id: str, fields: List[FieldMeta], form_values: Dict[str, Any],
                 access_token: str = '', environment: str = 'main'):
        super().__init__(item_type_id, fields, form_values, access_token, environment)
        self.writes: List[str] = []

    @classmethod
    def from_file(cls, record_path: str, access_token: str = '') -> 'JsonRecordHost':
        with open(record_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Record file '{record_path}' must contain a JSON object")
        fields = [FieldMeta.from_dict(field_data) for field_data in data.get('fields', [])]
        return cls(
            item_type_id=str(data.get('item_type_id', '')),
            fields=fields,
            form_values=data.get('values', {}),
            access_token=access_token,
            environment=data.get('environment', 'main'),
        )

    async def set_field_value(self, path: str, value: Any) -> None:
        api_key, _, locale = path.partition('.')
        if not locale:
            self.form_values[api_key] = value
        else:
            localized = self.form_values.get(api_key)
            if not isinstance(localized, dict):
                localized = {}
            self.form_values[api_key] = {**localized, locale: value}
        self.writes.append(path)
        logger.debug(f"Wrote field value '{path}'")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'item_type_id': self.item_type_id,
            'environment': self.environment,
            'fields': [
                {
                    'id': field.id,
                    'api_key': field.api_key,
                    'editor': field.editor,
                    'localized': field.localized,
                    'label': field.label,
                    'item_type_id': field.item_type_id,
                }
                for field in self.fields
            ],
            'values': self.form_values,
        }

    def save(self, output_path: str) -> None:
        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, ensure_ascii=False, indent=2)
        logger.info(f"Translated record saved to '{output_path}'.")
