"""
Cliente SOAP 1.2 para los servicios CRM (Discovery y Organization)

- Construcción del envelope con headers WS-Addressing y el header de seguridad
  que entrega la estrategia de autenticación.
- POST sobre zeep Transport (requests.Session), sin reintentos.
- Detección de respuestas que no son SOAP y de SOAP Faults.

Notas:
- NO usar elem1 or elem2 con lxml Elements (pueden ser "falsy" si no tienen hijos).
"""
import logging
from typing import Any, Optional, Tuple, Union

import lxml.etree as etree
import requests
from requests import Session
from requests.adapters import HTTPAdapter
from zeep.transports import Transport

from .config import CrmConfig
from .exceptions import CrmProtocolFault, CrmTransportError
from .xml_utils import (
    ANONYMOUS_ADDRESS,
    SOAP12_NS,
    WSA_NS,
    WSU_NS,
    find_first,
    get_uuid,
    parse_xml,
    strip_ns,
    text_content,
)

logger = logging.getLogger(__name__)

SOAP_CONTENT_TYPE = "application/soap+xml; charset=UTF-8"

# Actions WS-Addressing con las que el servidor anuncia un SOAP Fault
SOAP_FAULT_ACTIONS = frozenset([
    "http://www.w3.org/2005/08/addressing/soap/fault",
    "http://schemas.microsoft.com/net/2005/12/windowscommunicationfoundation/dispatcher/fault",
    "http://schemas.microsoft.com/xrm/2011/Contracts/Services/IOrganizationService/ExecuteOrganizationServiceFaultFault",
    "http://schemas.microsoft.com/xrm/2011/Contracts/Services/IOrganizationService/CreateOrganizationServiceFaultFault",
    "http://schemas.microsoft.com/xrm/2011/Contracts/Services/IOrganizationService/RetrieveOrganizationServiceFaultFault",
    "http://schemas.microsoft.com/xrm/2011/Contracts/Services/IOrganizationService/RetrieveMultipleOrganizationServiceFaultFault",
    "http://schemas.microsoft.com/xrm/2011/Contracts/Services/IOrganizationService/UpdateOrganizationServiceFaultFault",
    "http://schemas.microsoft.com/xrm/2011/Contracts/Services/IOrganizationService/DeleteOrganizationServiceFaultFault",
    "http://schemas.microsoft.com/xrm/2011/Contracts/Discovery/IDiscoveryService/ExecuteDiscoveryServiceFaultFault",
])


def build_soap_envelope(
    service_uri: str,
    soap_action: str,
    security_header: Optional[etree._Element],
    body: Union[etree._Element, bytes, str],
) -> bytes:
    """
    Construye el envelope SOAP 1.2 de un request CRM.

    Header (en orden): a:Action, a:ReplyTo, a:MessageID (urn:uuid nuevo en cada
    llamada), a:To y el header de seguridad. El body se inserta tal cual.
    """
    envelope = etree.Element(
        f"{{{SOAP12_NS}}}Envelope",
        nsmap={"s": SOAP12_NS, "a": WSA_NS, "u": WSU_NS},
    )
    header = etree.SubElement(envelope, f"{{{SOAP12_NS}}}Header")
    must_understand = f"{{{SOAP12_NS}}}mustUnderstand"

    action = etree.SubElement(header, f"{{{WSA_NS}}}Action")
    action.set(must_understand, "1")
    action.text = soap_action

    reply_to = etree.SubElement(header, f"{{{WSA_NS}}}ReplyTo")
    etree.SubElement(reply_to, f"{{{WSA_NS}}}Address").text = ANONYMOUS_ADDRESS

    etree.SubElement(header, f"{{{WSA_NS}}}MessageID").text = f"urn:uuid:{get_uuid()}"

    to = etree.SubElement(header, f"{{{WSA_NS}}}To")
    to.set(must_understand, "1")
    to.text = service_uri

    if security_header is not None:
        header.append(security_header)

    body_node = etree.SubElement(envelope, f"{{{SOAP12_NS}}}Body")
    if not isinstance(body, etree._Element):
        body = parse_xml(body)
    body_node.append(body)

    return etree.tostring(envelope, xml_declaration=False, encoding="UTF-8")


def _raise_fault(envelope: etree._Element) -> None:
    fault = find_first(envelope, "Fault")
    if fault is None:
        raise CrmProtocolFault("", "SOAP Fault sin nodo Fault")

    code_node = find_first(fault, "Code")
    code = text_content(find_first(code_node, "Value")) if code_node is not None else None
    reason_node = find_first(fault, "Reason")
    reason = text_content(find_first(reason_node, "Text")) if reason_node is not None else None
    # Faults del STS de Microsoft Online traen el código en psf:value
    detail_code = text_content(find_first(fault, "value"))

    raise CrmProtocolFault(
        strip_ns((code or "").strip()),
        (reason or "").strip(),
        detail_code=detail_code.strip() if detail_code else None,
    )


def check_soap_response(
    http_status: int,
    content: bytes,
    check_action: bool = True,
) -> etree._Element:
    """
    Valida una respuesta SOAP y devuelve el Envelope.

    Raises:
        CrmTransportError: Si no es XML, no hay Envelope SOAP 1.2, no hay Header
            o (con check_action) falta el Action WS-Addressing
        CrmProtocolFault: Si el Action es de fault (o, sin check_action, si el
            Body trae un Fault)
    """
    try:
        root = parse_xml(content)
    except etree.XMLSyntaxError as e:
        raise CrmTransportError(
            f"Respuesta SOAP inválida: HTTP {http_status}", http_status, content
        ) from e

    if root.tag == f"{{{SOAP12_NS}}}Envelope":
        envelope = root
    else:
        envelope = root.find(f".//{{{SOAP12_NS}}}Envelope")
    if envelope is None:
        raise CrmTransportError(
            f"Respuesta SOAP inválida: HTTP {http_status}", http_status, content
        )

    header = envelope.find(f"{{{SOAP12_NS}}}Header")
    if header is None:
        raise CrmTransportError(
            f"Respuesta SOAP sin Header: HTTP {http_status}", http_status, content
        )

    action = header.find(f".//{{{WSA_NS}}}Action")
    if action is None:
        if check_action:
            raise CrmTransportError(
                f"Respuesta SOAP sin Action WS-Addressing: HTTP {http_status}",
                http_status,
                content,
            )
        if envelope.find(f"{{{SOAP12_NS}}}Body/{{{SOAP12_NS}}}Fault") is not None:
            _raise_fault(envelope)
        return envelope

    action_uri = (action.text or "").strip()
    if action_uri in SOAP_FAULT_ACTIONS:
        logger.debug(f"SOAP Fault recibido (Action={action_uri})")
        _raise_fault(envelope)

    return envelope


class SoapClient:
    """Transporte SOAP 1.2 hacia el CRM sobre zeep Transport."""

    def __init__(self, config: CrmConfig, transport: Optional[Any] = None):
        self.config = config
        self.timeout = config.connector_timeout
        self.transport = transport if transport is not None else self._create_transport()

    def _create_transport(self) -> Transport:
        """Crea el transporte Zeep con una requests.Session (TLS verificado)."""
        session = Session()
        session.verify = True
        ca_bundle_path = getattr(self.config, "ca_bundle_path", None)
        if ca_bundle_path:
            session.verify = str(ca_bundle_path)
        session.headers["Connection"] = "Keep-Alive"
        session.mount("https://", HTTPAdapter())

        return Transport(
            session=session,
            timeout=self.timeout,
            operation_timeout=self.timeout,
        )

    def load(self, url: str) -> bytes:
        """Descarga un WSDL / documento de metadata."""
        try:
            return self.transport.load(url)
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            body = e.response.content if e.response is not None else None
            raise CrmTransportError(f"Error HTTP {status} al descargar {url}", status, body) from e
        except requests.RequestException as e:
            raise CrmTransportError(f"Error de conexión al descargar {url}: {e}") from e

    def post(self, url: str, body: bytes, headers: Optional[dict] = None) -> Tuple[int, bytes]:
        """POST crudo; devuelve (status HTTP, contenido)."""
        request_headers = {"Content-Type": SOAP_CONTENT_TYPE}
        if headers:
            request_headers.update(headers)
        logger.info(f"POST SOAP a {url} ({len(body)} bytes)")
        logger.debug(f"Request SOAP:\n{body.decode('utf-8', errors='replace')}")
        try:
            response = self.transport.post(url, body, request_headers)
        except requests.Timeout as e:
            raise CrmTransportError(f"Timeout al contactar {url} ({self.timeout}s)") from e
        except requests.RequestException as e:
            raise CrmTransportError(f"Error de conexión a {url}: {e}") from e

        logger.debug(
            f"Respuesta SOAP HTTP {response.status_code}:\n"
            f"{response.content.decode('utf-8', errors='replace')}"
        )
        return response.status_code, response.content

    def get_soap_response(self, url: str, envelope: bytes, check_action: bool = True) -> bytes:
        """
        Envía un envelope y devuelve la respuesta ya validada (bytes).

        Raises:
            CrmTransportError: Error de red o respuesta que no es SOAP
            CrmProtocolFault: SOAP Fault del servidor
        """
        status, content = self.post(url, envelope)
        check_soap_response(status, content, check_action=check_action)
        return content

    def close(self) -> None:
        session = getattr(self.transport, "session", None)
        if session is not None:
            session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
