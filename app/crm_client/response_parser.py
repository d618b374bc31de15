"""
Parsers de respuestas SOAP del CRM

Cada parser valida su nodo de nivel superior y falla con CrmStructuralError
nombrando el nodo que falta. Las búsquedas son por local-name (el CRM cambia
prefijos entre versiones).
"""
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import lxml.etree as etree

from .entity import Entity
from .exceptions import CrmStructuralError
from .models import (
    AliasedValue,
    EntityReference,
    EntitySchema,
    FormattedValue,
    OrganizationDetail,
    QueryResultPage,
)
from .xml_utils import (
    child_text,
    find_all,
    find_child,
    find_children,
    find_first,
    parse_time,
    parse_xml,
    require_first,
    text_content,
    xsi_type,
)

logger = logging.getLogger(__name__)

Content = Union[bytes, str, etree._Element]

MANDATORY_LEVELS = ("ApplicationRequired", "SystemRequired")


def _root(content: Content) -> etree._Element:
    if isinstance(content, etree._Element):
        return content
    return parse_xml(content)


def _decode_entity_reference(value: etree._Element) -> EntityReference:
    return EntityReference(
        logical_name=text_content(find_first(value, "LogicalName")),
        id=text_content(find_first(value, "Id")),
        name=text_content(find_first(value, "Name")),
    )


def _decode_option_set(value: etree._Element) -> Optional[int]:
    inner = text_content(find_first(value, "Value"))
    if inner is None or not inner.strip():
        return None
    return int(inner)


def _decode_datetime(value: etree._Element):
    return parse_time(text_content(value) or "")


_VALUE_DECODERS: Dict[str, Callable[[etree._Element], Any]] = {
    "EntityReference": _decode_entity_reference,
    "OptionSetValue": _decode_option_set,
    "dateTime": _decode_datetime,
}


def decode_value(value: etree._Element) -> Any:
    """Valor de un nodo c:value según su i:type (sin prefijo)."""
    decoder = _VALUE_DECODERS.get(xsi_type(value))
    if decoder is None:
        return text_content(value)
    return decoder(value)


def _store(target: Dict[str, Any], key: str, value: Any) -> None:
    if key in target:
        target[key] = FormattedValue(value=value, formatted_value=target[key])
    else:
        target[key] = value


def add_attributes(target: Dict[str, Any], key_value_nodes: Iterable[etree._Element]) -> Dict[str, Any]:
    """
    Decodifica nodos KeyValuePairOfstringanyType sobre target.

    - AliasedValue: se agrupa por alias (parte de la clave antes del primer '.')
      en un único AliasedValue.
    - Clave repetida: queda FormattedValue(value=nuevo, formatted_value=anterior).
    """
    for pair in key_value_nodes:
        key = text_content(find_first(pair, "key"))
        value = find_first(pair, "value")
        if key is None or value is None:
            raise CrmStructuralError("KeyValuePairOfstringanyType sin key/value")

        if xsi_type(value) == "AliasedValue":
            alias = key.split(".", 1)[0]
            entity_name = text_content(find_first(value, "EntityLogicalName"))
            attribute_name = text_content(find_first(value, "AttributeLogicalName"))
            inner = find_first(value, "Value")
            field_value = decode_value(inner) if inner is not None else None

            existing = target.get(alias)
            if isinstance(existing, AliasedValue):
                existing.fields[attribute_name] = field_value
            else:
                _store(target, alias, AliasedValue(entity_name, {attribute_name: field_value}))
            continue

        _store(target, key, decode_value(value))
    return target


def add_formatted_values(target: Dict[str, Any], key_value_nodes: Iterable[etree._Element]) -> Dict[str, Any]:
    """
    Agrega los FormattedValues (KeyValuePairOfstringstring) sobre los atributos.

    Si el atributo ya existe: FormattedValue(value=crudo, formatted_value=texto).
    """
    for pair in key_value_nodes:
        key = text_content(find_first(pair, "key"))
        formatted = text_content(find_first(pair, "value"))
        if key is None:
            raise CrmStructuralError("KeyValuePairOfstringstring sin key")

        if key in target:
            existing = target[key]
            if isinstance(existing, AliasedValue):
                continue
            target[key] = FormattedValue(value=existing, formatted_value=formatted)
        else:
            target[key] = formatted
    return target


def parse_entity_attributes(entity_node: etree._Element) -> Dict[str, Any]:
    """Atributos + valores formateados de un nodo Entity/RetrieveResult."""
    record: Dict[str, Any] = {}
    attributes = find_child(entity_node, "Attributes")
    if attributes is not None:
        add_attributes(record, find_children(attributes, "KeyValuePairOfstringanyType"))
    formatted = find_child(entity_node, "FormattedValues")
    if formatted is not None:
        add_formatted_values(record, find_children(formatted, "KeyValuePairOfstringstring"))
    return record


def _entity_from_node(entity_node: etree._Element, entity_name: Optional[str]) -> Entity:
    logical_name = child_text(entity_node, "LogicalName") or entity_name
    entity_id = child_text(entity_node, "Id")
    entity = Entity(logical_name, entity_id, parse_entity_attributes(entity_node))
    return entity


def parse_retrieve_multiple_response(content: Content, simple_mode: bool = False) -> QueryResultPage:
    """
    RetrieveMultipleResponse -> QueryResultPage

    simple_mode=True devuelve dicts; si no, instancias de Entity.
    """
    root = _root(content)
    response = require_first(root, "RetrieveMultipleResponse", "la respuesta de RetrieveMultiple")
    result = require_first(response, "RetrieveMultipleResult", "RetrieveMultipleResponse")

    entity_name = child_text(result, "EntityName")
    more_records = (child_text(result, "MoreRecords") or "").strip() == "true"
    paging_cookie = child_text(result, "PagingCookie") or None

    entities: List[Any] = []
    entities_node = find_child(result, "Entities")
    if entities_node is not None:
        for entity_node in find_children(entities_node, "Entity"):
            if simple_mode:
                entities.append(parse_entity_attributes(entity_node))
            else:
                entities.append(_entity_from_node(entity_node, entity_name))

    logger.debug(
        f"RetrieveMultiple: {len(entities)} registros de {entity_name} (MoreRecords={more_records})"
    )
    return QueryResultPage(
        entity_name=entity_name,
        entities=entities,
        more_records=more_records,
        paging_cookie=paging_cookie,
        count=len(entities),
    )


def parse_retrieve_response(content: Content, entity_type: Optional[str] = None) -> Entity:
    root = _root(content)
    response = require_first(root, "RetrieveResponse", "la respuesta de Retrieve")
    result = require_first(response, "RetrieveResult", "RetrieveResponse")
    return _entity_from_node(result, entity_type)


def parse_create_response(content: Content) -> str:
    """CreateResponse -> ID del registro creado."""
    root = _root(content)
    response = require_first(root, "CreateResponse", "la respuesta de Create")
    result = require_first(response, "CreateResult", "CreateResponse")
    entity_id = (text_content(result) or "").strip()
    if not entity_id:
        raise CrmStructuralError("CreateResult vacío en la respuesta de Create")
    return entity_id


def parse_update_response(content: Content) -> str:
    """UpdateResponse -> forma canónica (C14N) del nodo."""
    root = _root(content)
    response = require_first(root, "UpdateResponse", "la respuesta de Update")
    return etree.tostring(response, method="c14n").decode("utf-8")


def parse_delete_response(content: Content) -> bool:
    root = _root(content)
    require_first(root, "DeleteResponse", "la respuesta de Delete")
    return True


def parse_execute_action_response(content: Content) -> Dict[str, Optional[str]]:
    """ExecuteResult -> {clave: texto del valor}."""
    root = _root(content)
    result = require_first(root, "ExecuteResult", "la respuesta de Execute")
    values: Dict[str, Optional[str]] = {}
    for pair in find_all(result, "KeyValuePairOfstringanyType"):
        key = text_content(find_first(pair, "key"))
        if key is None:
            raise CrmStructuralError("KeyValuePairOfstringanyType sin key en ExecuteResult")
        values[key] = text_content(find_first(pair, "value"))
    return values


def _label(node: Optional[etree._Element]) -> Optional[str]:
    """Texto de UserLocalizedLabel/Label (None si no hay label)."""
    if node is None:
        return None
    user_label = find_child(node, "UserLocalizedLabel")
    if user_label is None:
        return None
    return child_text(user_label, "Label")


def _option_set(attribute: etree._Element) -> Dict[int, str]:
    options: Dict[int, str] = {}
    option_set = find_child(attribute, "OptionSet")
    if option_set is None:
        return options

    options_node = find_child(option_set, "Options")
    if options_node is not None:
        for option in find_children(options_node, "OptionMetadata"):
            value = child_text(option, "Value")
            if value is not None and value.strip():
                options[int(value)] = _label(find_child(option, "Label"))

    for name, value in (("FalseOption", 0), ("TrueOption", 1)):
        option = find_child(option_set, name)
        if option is not None:
            options[value] = _label(find_child(option, "Label"))
    return options


def _relationships(metadata: etree._Element, container: str, fields: Iterable[str]) -> List[Dict[str, Any]]:
    node = find_child(metadata, container)
    if node is None:
        return []
    return [
        {field: child_text(relationship, field) for field in fields}
        for relationship in node
        if isinstance(relationship.tag, str)
    ]


_MANY_TO_MANY_FIELDS = ("SchemaName", "Entity1LogicalName", "Entity2LogicalName", "IntersectEntityName")
_ONE_TO_MANY_FIELDS = (
    "SchemaName", "ReferencedEntity", "ReferencedAttribute", "ReferencingEntity", "ReferencingAttribute",
)


def parse_entity_metadata(metadata: etree._Element) -> EntitySchema:
    """Nodo EntityMetadata -> EntitySchema."""
    logical_name = child_text(metadata, "LogicalName")
    if not logical_name:
        raise CrmStructuralError("EntityMetadata sin LogicalName")

    object_type_code = child_text(metadata, "ObjectTypeCode")
    schema = EntitySchema(
        logical_name=logical_name,
        display_name=_label(find_child(metadata, "DisplayName")),
        display_collection_name=_label(find_child(metadata, "DisplayCollectionName")),
        description=_label(find_child(metadata, "Description")),
        object_type_code=int(object_type_code) if object_type_code and object_type_code.strip() else None,
        primary_id_attribute=child_text(metadata, "PrimaryIdAttribute"),
        primary_name_attribute=child_text(metadata, "PrimaryNameAttribute"),
    )

    attributes = find_child(metadata, "Attributes")
    for attribute in find_children(attributes, "AttributeMetadata") if attributes is not None else []:
        name = child_text(attribute, "LogicalName")
        if not name:
            continue
        required_level_node = find_child(attribute, "RequiredLevel")
        required_level = child_text(required_level_node, "Value") if required_level_node is not None else None
        schema.fields[name] = {
            "type": child_text(attribute, "AttributeType"),
            "label": _label(find_child(attribute, "DisplayName")),
            "description": _label(find_child(attribute, "Description")),
            "required_level": required_level,
            "is_valid_for_create": child_text(attribute, "IsValidForCreate") == "true",
            "is_valid_for_update": child_text(attribute, "IsValidForUpdate") == "true",
            "is_valid_for_read": child_text(attribute, "IsValidForRead") == "true",
            "attribute_of": child_text(attribute, "AttributeOf"),
        }
        if required_level in MANDATORY_LEVELS:
            schema.mandatory_fields.append(name)
        options = _option_set(attribute)
        if options:
            schema.option_sets[name] = options

    schema.many_to_many = _relationships(metadata, "ManyToManyRelationships", _MANY_TO_MANY_FIELDS)
    schema.many_to_one = _relationships(metadata, "ManyToOneRelationships", _ONE_TO_MANY_FIELDS)
    schema.one_to_many = _relationships(metadata, "OneToManyRelationships", _ONE_TO_MANY_FIELDS)
    return schema


def parse_retrieve_entity_response(content: Content) -> EntitySchema:
    """ExecuteResult (RetrieveEntityResponse) -> EntitySchema."""
    root = _root(content)
    results = [node for node in find_all(root, "ExecuteResult") if xsi_type(node) == "RetrieveEntityResponse"]
    if not results:
        raise CrmStructuralError(
            "No se encontró el nodo ExecuteResult de tipo RetrieveEntityResponse"
        )

    metadata = [node for node in find_all(results[0], "value") if xsi_type(node) == "EntityMetadata"]
    if not metadata:
        raise CrmStructuralError("No se encontró el nodo value de tipo EntityMetadata")
    return parse_entity_metadata(metadata[0])


def parse_retrieve_all_entities_response(content: Content) -> List[Dict[str, Optional[str]]]:
    """Entidades válidas para búsqueda avanzada: [{'LogicalName', 'DisplayName'}]."""
    root = _root(content)
    response = require_first(root, "ExecuteResponse", "la respuesta de RetrieveAllEntities")
    results = require_first(response, "Results", "ExecuteResponse")

    definitions = []
    for metadata in find_all(results, "EntityMetadata"):
        if child_text(metadata, "IsValidForAdvancedFind") != "true":
            continue
        definitions.append({
            "LogicalName": child_text(metadata, "LogicalName"),
            "DisplayName": _label(find_child(metadata, "DisplayName")),
        })
    return definitions


def parse_retrieve_organizations_response(content: Content) -> List[OrganizationDetail]:
    """Discovery RetrieveOrganizationsResponse -> lista de OrganizationDetail."""
    root = _root(content)
    require_first(root, "ExecuteResult", "la respuesta de RetrieveOrganizations")

    organizations = []
    for detail in find_all(root, "OrganizationDetail"):
        endpoints: Dict[str, str] = {}
        endpoints_node = find_child(detail, "Endpoints")
        if endpoints_node is not None:
            for pair in find_children(endpoints_node, "KeyValuePairOfEndpointTypestringztYlk6OT"):
                endpoints[text_content(find_first(pair, "key"))] = text_content(find_first(pair, "value"))

        organizations.append(OrganizationDetail(
            endpoints=endpoints,
            friendly_name=child_text(detail, "FriendlyName"),
            organization_id=child_text(detail, "OrganizationId"),
            organization_version=child_text(detail, "OrganizationVersion"),
            state=child_text(detail, "State"),
            unique_name=child_text(detail, "UniqueName"),
            url_name=child_text(detail, "UrlName"),
        ))
    return organizations
