"""
Generación de los nodos Body para los requests del Organization y Discovery Service
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

import lxml.etree as etree

from .entity import Entity
from .exceptions import CrmStructuralError
from .models import EntityReference, OptionSetValue
from .xml_utils import (
    ARRAYS_NS,
    CONTRACTS_NS,
    DISCOVERY_NS,
    EMPTY_GUID,
    GENERIC_NS,
    METADATA_NS,
    SERIALIZATION_NS,
    SERVICES_NS,
    XSD_NS,
    XSI_NS,
    XSI_TYPE,
    format_time,
    get_page_no,
    parse_xml,
)

DEFAULT_ENTITY_FILTERS = "Entity Attributes Relationships"

_I_NIL = f"{{{XSI_NS}}}nil"


def _b(name: str) -> str:
    return f"{{{CONTRACTS_NS}}}{name}"


def _c(name: str) -> str:
    return f"{{{GENERIC_NS}}}{name}"


def _services_root(operation: str) -> etree._Element:
    return etree.Element(
        f"{{{SERVICES_NS}}}{operation}",
        nsmap={None: SERVICES_NS, "b": CONTRACTS_NS, "c": GENERIC_NS, "i": XSI_NS},
    )


def _typed_value(parent: etree._Element, tag: str, value: Any) -> etree._Element:
    """Agrega un nodo con i:type según el tipo Python del valor."""
    node = etree.SubElement(parent, tag, nsmap={"d": XSD_NS, "e": SERIALIZATION_NS})

    if value is None:
        node.set(_I_NIL, "true")
    elif isinstance(value, EntityReference):
        node.set(XSI_TYPE, "b:EntityReference")
        etree.SubElement(node, _b("Id")).text = value.id
        etree.SubElement(node, _b("LogicalName")).text = value.logical_name
        name = etree.SubElement(node, _b("Name"))
        if value.name is None:
            name.set(_I_NIL, "true")
        else:
            name.text = value.name
    elif isinstance(value, OptionSetValue):
        node.set(XSI_TYPE, "b:OptionSetValue")
        etree.SubElement(node, _b("Value")).text = str(value.value)
    elif isinstance(value, bool):
        node.set(XSI_TYPE, "d:boolean")
        node.text = "true" if value else "false"
    elif isinstance(value, int):
        node.set(XSI_TYPE, "d:int")
        node.text = str(value)
    elif isinstance(value, (float, Decimal)):
        node.set(XSI_TYPE, "d:decimal")
        node.text = str(value)
    elif isinstance(value, datetime):
        node.set(XSI_TYPE, "d:dateTime")
        node.text = format_time(value)
    else:
        node.set(XSI_TYPE, "d:string")
        node.text = str(value)
    return node


def _key_value(parent: etree._Element, key: str, value: Any) -> None:
    pair = etree.SubElement(parent, _b("KeyValuePairOfstringanyType"))
    etree.SubElement(pair, _c("key")).text = key
    _typed_value(pair, _c("value"), value)


def _parameter(parent: etree._Element, key: str, type_name: str, text: str, ns: Dict[str, str]) -> None:
    pair = etree.SubElement(parent, _b("KeyValuePairOfstringanyType"))
    etree.SubElement(pair, _c("key")).text = key
    value = etree.SubElement(pair, _c("value"), nsmap=ns)
    value.set(XSI_TYPE, type_name)
    value.text = text


def _organization_request(
    parent: etree._Element,
    request_type: str,
    request_name: str,
) -> etree._Element:
    request = etree.SubElement(parent, f"{{{SERVICES_NS}}}request")
    request.set(XSI_TYPE, request_type)
    parameters = etree.SubElement(request, _b("Parameters"))
    etree.SubElement(request, _b("RequestId")).set(_I_NIL, "true")
    etree.SubElement(request, _b("RequestName")).text = request_name
    return parameters


def _append_entity(parent: etree._Element, entity: Entity, entity_id: str) -> None:
    node = etree.SubElement(parent, f"{{{SERVICES_NS}}}entity")
    attributes = etree.SubElement(node, _b("Attributes"))
    for key, value in entity.changed_attributes.items():
        _key_value(attributes, key, value)
    etree.SubElement(node, _b("EntityState")).set(_I_NIL, "true")
    etree.SubElement(node, _b("FormattedValues"))
    etree.SubElement(node, _b("Id")).text = entity_id
    etree.SubElement(node, _b("LogicalName")).text = entity.logical_name
    etree.SubElement(node, _b("RelatedEntities"))


def generate_retrieve_entity_request(
    entity_type: str,
    entity_id: Optional[str] = None,
    entity_filters: Optional[str] = None,
    show_unpublished: bool = False,
) -> etree._Element:
    """Execute RetrieveEntityRequest (metadatos de una entidad)."""
    execute = _services_root("Execute")
    parameters = _organization_request(execute, "b:RetrieveEntityRequest", "RetrieveEntity")
    _parameter(
        parameters, "EntityFilters", "m:EntityFilters",
        entity_filters or DEFAULT_ENTITY_FILTERS, {"m": METADATA_NS},
    )
    _parameter(
        parameters, "MetadataId", "e:guid", entity_id or EMPTY_GUID, {"e": SERIALIZATION_NS},
    )
    _parameter(
        parameters, "RetrieveAsIfPublished", "d:boolean",
        "true" if show_unpublished else "false", {"d": XSD_NS},
    )
    _parameter(parameters, "LogicalName", "d:string", entity_type, {"d": XSD_NS})
    return execute


def generate_retrieve_all_entities_request() -> etree._Element:
    """Execute RetrieveAllEntitiesRequest (solo metadatos de entidad)."""
    execute = _services_root("Execute")
    parameters = _organization_request(execute, "b:RetrieveAllEntitiesRequest", "RetrieveAllEntities")
    _parameter(parameters, "EntityFilters", "m:EntityFilters", "Entity", {"m": METADATA_NS})
    _parameter(parameters, "RetrieveAsIfPublished", "d:boolean", "false", {"d": XSD_NS})
    return execute


def apply_paging(
    query_xml: str,
    paging_cookie: Optional[str] = None,
    limit_count: Optional[int] = None,
    page_number: Optional[int] = None,
) -> str:
    """
    Escribe page, count y paging-cookie en el nodo fetch.

    Con cookie la página pedida es la del cookie + 1; sin cookie se usa
    page_number (o 1).
    """
    try:
        fetch = parse_xml(query_xml)
    except etree.XMLSyntaxError as e:
        raise CrmStructuralError(f"FetchXML inválido: {e}") from e
    if fetch.tag != "fetch":
        raise CrmStructuralError(f"FetchXML sin nodo fetch raíz: {fetch.tag}")

    if paging_cookie is not None:
        fetch.set("paging-cookie", paging_cookie)
        fetch.set("page", str(get_page_no(paging_cookie) + 1))
    else:
        fetch.set("page", str(page_number or 1))

    if limit_count is not None:
        fetch.set("count", str(limit_count))
    return etree.tostring(fetch, encoding="unicode")


def generate_retrieve_multiple_request(
    query_xml: str,
    paging_cookie: Optional[str] = None,
    limit_count: Optional[int] = None,
    page_number: Optional[int] = None,
) -> etree._Element:
    """RetrieveMultiple con un FetchExpression."""
    retrieve = _services_root("RetrieveMultiple")
    query = etree.SubElement(retrieve, f"{{{SERVICES_NS}}}query")
    query.set(XSI_TYPE, "b:FetchExpression")
    etree.SubElement(query, _b("Query")).text = apply_paging(
        query_xml, paging_cookie, limit_count, page_number
    )
    return retrieve


def generate_retrieve_request(
    entity_type: str,
    entity_id: str,
    column_set: Optional[Iterable[str]] = None,
) -> etree._Element:
    """Retrieve de un registro; sin column_set se piden todas las columnas."""
    retrieve = _services_root("Retrieve")
    etree.SubElement(retrieve, f"{{{SERVICES_NS}}}entityName").text = entity_type
    etree.SubElement(retrieve, f"{{{SERVICES_NS}}}id").text = entity_id
    columns_node = etree.SubElement(retrieve, f"{{{SERVICES_NS}}}columnSet")
    columns = list(column_set or [])
    etree.SubElement(columns_node, _b("AllColumns")).text = "false" if columns else "true"
    if columns:
        names = etree.SubElement(columns_node, _b("Columns"), nsmap={"f": ARRAYS_NS})
        for column in columns:
            etree.SubElement(names, f"{{{ARRAYS_NS}}}string").text = column
    return retrieve


def generate_create_request(entity: Entity) -> etree._Element:
    create = _services_root("Create")
    _append_entity(create, entity, EMPTY_GUID)
    return create


def generate_update_request(entity: Entity) -> etree._Element:
    update = _services_root("Update")
    _append_entity(update, entity, entity.id)
    return update


def generate_delete_request(entity: Entity) -> etree._Element:
    delete = _services_root("Delete")
    etree.SubElement(delete, f"{{{SERVICES_NS}}}entityName").text = entity.logical_name
    etree.SubElement(delete, f"{{{SERVICES_NS}}}id").text = entity.id
    return delete


def generate_execute_action_request(
    request_name: str,
    parameters: Optional[Dict[str, Any]] = None,
    request_type: Optional[str] = None,
) -> etree._Element:
    """Execute de un request genérico (OrganizationRequest) o tipado (b:WhoAmIRequest)."""
    execute = _services_root("Execute")
    params_node = _organization_request(
        execute, request_type or "b:OrganizationRequest", request_name
    )
    for key, value in (parameters or {}).items():
        _key_value(params_node, key, value)
    return execute


def generate_retrieve_organizations_request() -> etree._Element:
    """Execute RetrieveOrganizationsRequest del Discovery Service."""
    execute = etree.Element(
        f"{{{DISCOVERY_NS}}}Execute", nsmap={None: DISCOVERY_NS, "i": XSI_NS}
    )
    request = etree.SubElement(execute, f"{{{DISCOVERY_NS}}}request")
    request.set(XSI_TYPE, "RetrieveOrganizationsRequest")
    etree.SubElement(request, f"{{{DISCOVERY_NS}}}AccessType").text = "Default"
    etree.SubElement(request, f"{{{DISCOVERY_NS}}}Release").text = "Current"
    return execute
