"""
Aplanado de WSDL: reemplaza cada <import location=...> por el contenido importado

Los servicios CRM publican el WSDL repartido en varios documentos
(?wsdl=wsdl0, ?xsd=xsd0, ...). Las búsquedas de políticas y bindings necesitan
un único árbol, así que los imports se resuelven de forma recursiva y se
insertan en el lugar del nodo import.
"""
import logging
from typing import Callable, Optional, Set
from urllib.parse import urljoin

import lxml.etree as etree

from .exceptions import CrmStructuralError
from .xml_utils import local_name, parse_xml

logger = logging.getLogger(__name__)

Loader = Callable[[str], bytes]


def _find_definitions(root: etree._Element) -> Optional[etree._Element]:
    if local_name(root) == "definitions":
        return root
    found = root.xpath('.//*[local-name()="definitions"]')
    return found[0] if found else None


def _load_document(url: str, load: Loader) -> etree._Element:
    content = load(url)
    try:
        return parse_xml(content)
    except etree.XMLSyntaxError as e:
        raise CrmStructuralError(f"Documento importado no es XML válido: {url}: {e}") from e


def _detach_with_namespaces(node: etree._Element, nsmap: dict) -> etree._Element:
    """
    Copia node agregando los namespaces del documento de origen.

    Los atributos tipo QName (element="tns:Foo", binding="i0:...") dependen de
    declaraciones que viven en el <definitions> importado.
    """
    merged = dict(nsmap)
    merged.update(node.nsmap)
    copy = etree.Element(node.tag, attrib=dict(node.attrib), nsmap=merged)
    copy.text = node.text
    for child in list(node):
        copy.append(child)
    return copy


def _merge_imports(
    node: etree._Element,
    root_definitions: etree._Element,
    load: Loader,
    base_url: Optional[str],
    seen: Set[str],
) -> None:
    for child in list(node):
        if not isinstance(child.tag, str):
            continue

        if local_name(child) != "import":
            if len(child):
                _merge_imports(child, root_definitions, load, base_url, seen)
            continue

        location = child.get("location") or child.get("schemaLocation")
        if not location:
            continue

        import_url = urljoin(base_url, location) if base_url else location
        if import_url in seen:
            # ya insertado en otro punto del árbol
            node.remove(child)
            continue
        seen.add(import_url)

        logger.info(f"Importando WSDL/XSD: {import_url}")
        imported = _load_document(import_url, load)

        definitions = _find_definitions(imported)
        if definitions is not None:
            for name, value in definitions.attrib.items():
                if name == "targetNamespace":
                    continue
                root_definitions.set(name, value)

            _merge_imports(definitions, root_definitions, load, import_url, seen)

            for imported_child in list(definitions):
                if not isinstance(imported_child.tag, str):
                    continue
                child.addprevious(_detach_with_namespaces(imported_child, definitions.nsmap))
        else:
            _merge_imports(imported, root_definitions, load, import_url, seen)
            child.addprevious(imported)

        node.remove(child)


def flatten_wsdl(
    root: etree._Element,
    load: Loader,
    base_url: Optional[str] = None,
) -> etree._Element:
    """
    Resuelve en el lugar todos los imports con location/schemaLocation.

    Args:
        root: Raíz del documento WSDL (definitions o un nodo que lo contenga)
        load: Función que descarga una URL y devuelve bytes
        base_url: URL del documento, para resolver locations relativas

    Returns:
        La misma raíz, ya aplanada. Un documento sin imports no cambia.

    Raises:
        CrmStructuralError: Si el documento no tiene <definitions> o un import no es XML
        CrmTransportError: Si falla la descarga de un import
    """
    root_definitions = _find_definitions(root)
    if root_definitions is None:
        raise CrmStructuralError("No se encontró el nodo definitions en el WSDL")

    _merge_imports(root, root_definitions, load, base_url, set())
    return root


def load_wsdl(url: str, load: Loader) -> etree._Element:
    """Descarga un WSDL y devuelve su raíz aplanada."""
    logger.info(f"Descargando WSDL: {url}")
    root = _load_document(url, load)
    return flatten_wsdl(root, load, base_url=url)
