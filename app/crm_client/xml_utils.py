"""
Utilidades XML compartidas (namespaces, búsquedas por local-name, fechas, GUIDs)
"""
import uuid
from datetime import datetime
from typing import List, Optional, Union

import lxml.etree as etree

from .exceptions import CrmStructuralError

# Namespaces SOAP / WS-*
SOAP12_NS = "http://www.w3.org/2003/05/soap-envelope"
WSA_NS = "http://www.w3.org/2005/08/addressing"
WSU_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd"
WSSE_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd"
WSSE11_NS = "http://docs.oasis-open.org/wss/oasis-wss-wssecurity-secext-1.1.xsd"
WSP_NS = "http://schemas.xmlsoap.org/ws/2004/09/policy"
TRUST13_NS = "http://docs.oasis-open.org/ws-sx/ws-trust/200512"
TRUST2005_NS = "http://schemas.xmlsoap.org/ws/2005/02/trust"
DS_NS = "http://www.w3.org/2000/09/xmldsig#"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
XSD_NS = "http://www.w3.org/2001/XMLSchema"

# Namespaces de contratos CRM 2011
CONTRACTS_NS = "http://schemas.microsoft.com/xrm/2011/Contracts"
SERVICES_NS = "http://schemas.microsoft.com/xrm/2011/Contracts/Services"
DISCOVERY_NS = "http://schemas.microsoft.com/xrm/2011/Contracts/Discovery"
METADATA_NS = "http://schemas.microsoft.com/xrm/2011/Metadata"
GENERIC_NS = "http://schemas.datacontract.org/2004/07/System.Collections.Generic"
SERIALIZATION_NS = "http://schemas.microsoft.com/2003/10/Serialization/"
ARRAYS_NS = "http://schemas.microsoft.com/2003/10/Serialization/Arrays"

ANONYMOUS_ADDRESS = "http://www.w3.org/2005/08/addressing/anonymous"
EMPTY_GUID = "00000000-0000-0000-0000-000000000000"

# Formato fijo de fechas devuelto por el CRM
CRM_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

XSI_TYPE = f"{{{XSI_NS}}}type"

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)


def parse_xml(content: Union[bytes, str]) -> etree._Element:
    """Parsea XML sin resolver entidades externas."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return etree.fromstring(content, parser=_PARSER)


def strip_ns(value: Optional[str]) -> str:
    """Quita el prefijo de un nombre calificado ('c:EntityMetadata' -> 'EntityMetadata')."""
    if not value:
        return ""
    return value.split(":", 1)[-1]


def local_name(node: etree._Element) -> str:
    if not isinstance(node.tag, str):
        return ""
    return etree.QName(node).localname


def find_all(node: etree._Element, name: str) -> List[etree._Element]:
    """Descendientes con local-name igual a name, en orden de documento."""
    return node.xpath(".//*[local-name()=$name]", name=name)


def find_first(node: etree._Element, name: str) -> Optional[etree._Element]:
    found = find_all(node, name)
    return found[0] if found else None


def find_children(node: etree._Element, name: str) -> List[etree._Element]:
    """Hijos directos con local-name igual a name."""
    return node.xpath("./*[local-name()=$name]", name=name)


def find_child(node: etree._Element, name: str) -> Optional[etree._Element]:
    found = find_children(node, name)
    return found[0] if found else None


def text_content(node: Optional[etree._Element]) -> Optional[str]:
    """Equivalente a DOM textContent (None si el nodo no existe)."""
    if node is None:
        return None
    return "".join(node.itertext())


def child_text(node: etree._Element, name: str) -> Optional[str]:
    return text_content(find_child(node, name))


def require_first(node: etree._Element, name: str, context: str) -> etree._Element:
    """Como find_first pero falla con CrmStructuralError nombrando el nodo."""
    found = find_first(node, name)
    if found is None:
        raise CrmStructuralError(f"No se encontró el nodo {name} en {context}")
    return found


def xsi_type(node: etree._Element) -> str:
    """Tipo xsi:type del nodo sin prefijo."""
    return strip_ns(node.get(XSI_TYPE))


def parse_time(value: str) -> datetime:
    """Parsea una fecha CRM con el formato fijo %Y-%m-%dT%H:%M:%SZ."""
    try:
        return datetime.strptime(value.strip(), CRM_DATETIME_FORMAT)
    except ValueError as e:
        raise CrmStructuralError(f"Fecha con formato inesperado: {value!r}") from e


def format_time(value: datetime) -> str:
    return value.strftime(CRM_DATETIME_FORMAT)


def get_uuid() -> str:
    return str(uuid.uuid4())


def get_page_no(paging_cookie: str) -> int:
    """Lee el atributo page de un paging cookie ('<cookie page="2">...')."""
    try:
        cookie = parse_xml(paging_cookie)
    except etree.XMLSyntaxError as e:
        raise CrmStructuralError(f"Paging cookie inválido: {paging_cookie!r}") from e
    page = cookie.get("page")
    if page is None or not page.strip().isdigit():
        raise CrmStructuralError(f"Paging cookie sin atributo page válido: {paging_cookie!r}")
    return int(page)
