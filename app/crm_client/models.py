"""
Modelos de datos para el cliente CRM
"""
import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from lxml import etree

from .xml_utils import parse_xml


@dataclass
class EntityReference:
    """Referencia a otro registro (lookup)"""
    logical_name: Optional[str]
    id: Optional[str]
    name: Optional[str] = None


@dataclass
class AliasedValue:
    """Valores de una entidad vinculada (link-entity) agrupados por alias"""
    logical_name: Optional[str]
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FormattedValue:
    """Valor crudo junto a su representación formateada"""
    value: Any
    formatted_value: Any


@dataclass
class OptionSetValue:
    """Valor de un option set al escribir (create/update)"""
    value: int


@dataclass
class SecurityToken:
    """Token emitido por el STS (RequestSecurityTokenResponse)"""
    token_xml: str
    created: Optional[str] = None
    expires: Optional[str] = None
    binary_secret: Optional[str] = None
    key_identifier: Optional[str] = None

    def token_element(self) -> etree._Element:
        """Nodo del token (EncryptedData/Assertion) para embeber tal cual en el header."""
        return parse_xml(self.token_xml)


@dataclass
class QueryResultPage:
    """Resultado de RetrieveMultiple (una página o varias acumuladas)"""
    entity_name: Optional[str]
    entities: List[Any]
    more_records: bool
    paging_cookie: Optional[str]
    count: int


@dataclass
class OrganizationDetail:
    """Organización devuelta por el Discovery Service"""
    endpoints: Dict[str, str]
    friendly_name: Optional[str] = None
    organization_id: Optional[str] = None
    organization_version: Optional[str] = None
    state: Optional[str] = None
    unique_name: Optional[str] = None
    url_name: Optional[str] = None


@dataclass
class EntitySchema:
    """Metadatos de una entidad (RetrieveEntity), serializable para el cache"""
    logical_name: str
    display_name: Optional[str] = None
    display_collection_name: Optional[str] = None
    description: Optional[str] = None
    object_type_code: Optional[int] = None
    primary_id_attribute: Optional[str] = None
    primary_name_attribute: Optional[str] = None
    fields: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    mandatory_fields: List[str] = field(default_factory=list)
    option_sets: Dict[str, Dict[int, str]] = field(default_factory=dict)
    many_to_many: List[Dict[str, Any]] = field(default_factory=list)
    many_to_one: List[Dict[str, Any]] = field(default_factory=list)
    one_to_many: List[Dict[str, Any]] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        return json.dumps(asdict(self), ensure_ascii=False, sort_keys=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "EntitySchema":
        payload = json.loads(data.decode("utf-8"))
        # JSON convierte las claves de los option sets en strings
        payload["option_sets"] = {
            attribute: {int(value): label for value, label in options.items()}
            for attribute, options in payload.get("option_sets", {}).items()
        }
        return cls(**payload)
