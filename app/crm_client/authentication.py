"""
Estrategias de autenticación WS-Trust para el CRM

- FederationAuthentication: ADFS (on-premise / IFD). RequestSecurityToken
  WS-Trust 1.3 con UsernameToken al endpoint trust13 del ADFS. El header de
  seguridad lleva Timestamp, el token cifrado y una firma HMAC-SHA1 del
  Timestamp con la clave de prueba (BinarySecret).
- OnlineFederationAuthentication: STS de Microsoft Online (WS-Trust 2005).
  El header lleva Timestamp y el token cifrado.

Los tokens se guardan por servicio durante la vida de la estrategia; el
vencimiento no se controla localmente (un token vencido vuelve como SOAP Fault).
"""
import base64
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import lxml.etree as etree

from .config import AuthMode, CrmConfig
from .endpoints import DISCOVERY, ORGANIZATION, ServiceEndpoints
from .exceptions import CrmStructuralError
from .models import SecurityToken
from .soap_client import SoapClient, build_soap_envelope
from .xml_utils import (
    DS_NS,
    SOAP12_NS,
    TRUST13_NS,
    TRUST2005_NS,
    WSA_NS,
    WSP_NS,
    WSSE11_NS,
    WSSE_NS,
    WSU_NS,
    find_first,
    get_uuid,
    parse_xml,
    text_content,
)

logger = logging.getLogger(__name__)

TRUST13_ISSUE_ACTION = "http://docs.oasis-open.org/ws-sx/ws-trust/200512/RST/Issue"
TRUST13_ISSUE_REQUEST = "http://docs.oasis-open.org/ws-sx/ws-trust/200512/Issue"
TRUST2005_ISSUE_ACTION = "http://schemas.xmlsoap.org/ws/2005/02/trust/RST/Issue"
TRUST2005_ISSUE_REQUEST = "http://schemas.xmlsoap.org/ws/2005/02/trust/Issue"

PASSWORD_TEXT_TYPE = (
    "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-username-token-profile-1.0#PasswordText"
)
EXC_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"
HMAC_SHA1 = "http://www.w3.org/2000/09/xmldsig#hmac-sha1"
SHA1_DIGEST = "http://www.w3.org/2000/09/xmldsig#sha1"
SAML11_TOKEN_TYPE = "http://docs.oasis-open.org/wss/oasis-wss-saml-token-profile-1.1#SAMLV1.1"
SAML_ASSERTION_ID = "http://docs.oasis-open.org/wss/oasis-wss-saml-token-profile-1.0#SAMLAssertionID"

# Vigencia del Timestamp de cada request
TIMESTAMP_TTL = timedelta(minutes=60)
TIMESTAMP_ID = "_0"


def _timestamp_values(now: Optional[datetime] = None):
    now = now or datetime.now(timezone.utc)
    fmt = "%Y-%m-%dT%H:%M:%S.000Z"
    return now.strftime(fmt), (now + TIMESTAMP_TTL).strftime(fmt)


def build_timestamp(now: Optional[datetime] = None) -> etree._Element:
    created, expires = _timestamp_values(now)
    timestamp = etree.Element(f"{{{WSU_NS}}}Timestamp", nsmap={"u": WSU_NS})
    timestamp.set(f"{{{WSU_NS}}}Id", TIMESTAMP_ID)
    etree.SubElement(timestamp, f"{{{WSU_NS}}}Created").text = created
    etree.SubElement(timestamp, f"{{{WSU_NS}}}Expires").text = expires
    return timestamp


def _security_node() -> etree._Element:
    security = etree.Element(
        f"{{{WSSE_NS}}}Security",
        nsmap={"o": WSSE_NS, "u": WSU_NS, "s": SOAP12_NS},
    )
    security.set(f"{{{SOAP12_NS}}}mustUnderstand", "1")
    return security


def build_username_security_header(username: str, password: str) -> etree._Element:
    """Header o:Security con Timestamp y UsernameToken (texto plano sobre TLS)."""
    security = _security_node()
    security.append(build_timestamp())

    token = etree.SubElement(security, f"{{{WSSE_NS}}}UsernameToken")
    token.set(f"{{{WSU_NS}}}Id", f"uuid-{get_uuid()}-1")
    etree.SubElement(token, f"{{{WSSE_NS}}}Username").text = username
    password_node = etree.SubElement(token, f"{{{WSSE_NS}}}Password")
    password_node.set("Type", PASSWORD_TEXT_TYPE)
    password_node.text = password
    return security


def build_request_security_token(trust_ns: str, request_type: str, applies_to: str) -> etree._Element:
    rst = etree.Element(f"{{{trust_ns}}}RequestSecurityToken", nsmap={"t": trust_ns})
    applies = etree.SubElement(rst, f"{{{WSP_NS}}}AppliesTo", nsmap={"wsp": WSP_NS})
    reference = etree.SubElement(applies, f"{{{WSA_NS}}}EndpointReference", nsmap={"a": WSA_NS})
    etree.SubElement(reference, f"{{{WSA_NS}}}Address").text = applies_to
    etree.SubElement(rst, f"{{{trust_ns}}}RequestType").text = request_type
    return rst


def parse_security_token_response(content: bytes) -> SecurityToken:
    """
    Extrae el token de un RequestSecurityTokenResponse (WS-Trust 1.3 o 2005).

    Raises:
        CrmStructuralError: Si falta RequestedSecurityToken o su contenido
    """
    root = parse_xml(content)
    requested = find_first(root, "RequestedSecurityToken")
    if requested is None:
        raise CrmStructuralError("No se encontró RequestedSecurityToken en la respuesta del STS")

    token_nodes = [child for child in requested if isinstance(child.tag, str)]
    if not token_nodes:
        raise CrmStructuralError("RequestedSecurityToken vacío en la respuesta del STS")

    lifetime = find_first(root, "Lifetime")
    created = expires = None
    if lifetime is not None:
        created = text_content(find_first(lifetime, "Created"))
        expires = text_content(find_first(lifetime, "Expires"))

    reference = find_first(root, "RequestedAttachedReference")
    key_identifier = text_content(find_first(reference, "KeyIdentifier")) if reference is not None else None
    if key_identifier is None:
        key_identifier = text_content(find_first(root, "KeyIdentifier"))

    proof = find_first(root, "RequestedProofToken")
    binary_secret = text_content(find_first(proof, "BinarySecret")) if proof is not None else None

    return SecurityToken(
        token_xml=etree.tostring(token_nodes[0], encoding="unicode"),
        created=created,
        expires=expires,
        binary_secret=binary_secret,
        key_identifier=key_identifier,
    )


class Authentication(ABC):
    """Estrategia de autenticación: obtiene tokens y arma el header de seguridad."""

    auth_mode: AuthMode

    def __init__(self, config: CrmConfig, endpoints: ServiceEndpoints, soap_client: SoapClient):
        self.config = config
        self.endpoints = endpoints
        self.soap_client = soap_client
        self._tokens: Dict[str, SecurityToken] = {}

    def get_discovery_security_token(self) -> SecurityToken:
        return self._get_token(DISCOVERY)

    def get_organization_security_token(self) -> SecurityToken:
        return self._get_token(ORGANIZATION)

    def invalidate_tokens(self) -> None:
        self._tokens.clear()

    def _get_token(self, service: str) -> SecurityToken:
        if service not in self._tokens:
            endpoint = self.endpoints.get_security_token_endpoint(service, self.auth_mode)
            logger.info(f"Solicitando token {self.auth_mode.value} para {service} a {endpoint}")
            self._tokens[service] = self.request_security_token(endpoint, self.applies_to(service))
        return self._tokens[service]

    def _send_rst(
        self,
        endpoint: str,
        action: str,
        rst: etree._Element,
        check_action: bool,
    ) -> SecurityToken:
        envelope = build_soap_envelope(
            endpoint,
            action,
            build_username_security_header(self.config.username, self.config.password),
            rst,
        )
        content = self.soap_client.get_soap_response(endpoint, envelope, check_action=check_action)
        return parse_security_token_response(content)

    @abstractmethod
    def applies_to(self, service: str) -> str:
        """Valor de wsp:AppliesTo del RequestSecurityToken."""

    @abstractmethod
    def request_security_token(self, endpoint: str, applies_to: str) -> SecurityToken:
        """Envía el RequestSecurityToken al STS."""

    @abstractmethod
    def get_security_header_node(self, token: SecurityToken) -> etree._Element:
        """Header o:Security para un request al CRM."""


class FederationAuthentication(Authentication):
    """Autenticación contra ADFS (claims-based / IFD)."""

    auth_mode = AuthMode.FEDERATION

    def applies_to(self, service: str) -> str:
        return self.endpoints.service_url(service)

    def request_security_token(self, endpoint: str, applies_to: str) -> SecurityToken:
        rst = build_request_security_token(TRUST13_NS, TRUST13_ISSUE_REQUEST, applies_to)
        token = self._send_rst(endpoint, TRUST13_ISSUE_ACTION, rst, check_action=True)
        if not token.binary_secret or not token.key_identifier:
            raise CrmStructuralError(
                "La respuesta del ADFS no trae BinarySecret/KeyIdentifier para firmar"
            )
        return token

    def get_security_header_node(self, token: SecurityToken) -> etree._Element:
        security = _security_node()
        timestamp = build_timestamp()
        security.append(timestamp)
        security.append(token.token_element())
        security.append(self._build_signature(timestamp, token))
        return security

    @staticmethod
    def _build_signature(timestamp: etree._Element, token: SecurityToken) -> etree._Element:
        digest = base64.b64encode(
            hashlib.sha1(etree.tostring(timestamp, method="c14n", exclusive=True)).digest()
        ).decode("ascii")

        signature = etree.Element(f"{{{DS_NS}}}Signature", nsmap={None: DS_NS})
        signed_info = etree.SubElement(signature, f"{{{DS_NS}}}SignedInfo")
        etree.SubElement(signed_info, f"{{{DS_NS}}}CanonicalizationMethod").set("Algorithm", EXC_C14N)
        etree.SubElement(signed_info, f"{{{DS_NS}}}SignatureMethod").set("Algorithm", HMAC_SHA1)
        reference = etree.SubElement(signed_info, f"{{{DS_NS}}}Reference")
        reference.set("URI", f"#{TIMESTAMP_ID}")
        transforms = etree.SubElement(reference, f"{{{DS_NS}}}Transforms")
        etree.SubElement(transforms, f"{{{DS_NS}}}Transform").set("Algorithm", EXC_C14N)
        etree.SubElement(reference, f"{{{DS_NS}}}DigestMethod").set("Algorithm", SHA1_DIGEST)
        etree.SubElement(reference, f"{{{DS_NS}}}DigestValue").text = digest

        key = base64.b64decode(token.binary_secret)
        signed_info_c14n = etree.tostring(signed_info, method="c14n", exclusive=True)
        etree.SubElement(signature, f"{{{DS_NS}}}SignatureValue").text = base64.b64encode(
            hmac.new(key, signed_info_c14n, hashlib.sha1).digest()
        ).decode("ascii")

        key_info = etree.SubElement(signature, f"{{{DS_NS}}}KeyInfo")
        reference_node = etree.SubElement(
            key_info,
            f"{{{WSSE_NS}}}SecurityTokenReference",
            nsmap={"o": WSSE_NS, "k": WSSE11_NS},
        )
        reference_node.set(f"{{{WSSE11_NS}}}TokenType", SAML11_TOKEN_TYPE)
        identifier = etree.SubElement(reference_node, f"{{{WSSE_NS}}}KeyIdentifier")
        identifier.set("ValueType", SAML_ASSERTION_ID)
        identifier.text = token.key_identifier
        return signature


class OnlineFederationAuthentication(Authentication):
    """Autenticación contra el STS de Microsoft Online."""

    auth_mode = AuthMode.ONLINE_FEDERATION

    def applies_to(self, service: str) -> str:
        return self.config.online_applies_to

    def request_security_token(self, endpoint: str, applies_to: str) -> SecurityToken:
        rst = build_request_security_token(TRUST2005_NS, TRUST2005_ISSUE_REQUEST, applies_to)
        # El STS de Microsoft Online no devuelve Action WS-Addressing
        return self._send_rst(endpoint, TRUST2005_ISSUE_ACTION, rst, check_action=False)

    def get_security_header_node(self, token: SecurityToken) -> etree._Element:
        security = _security_node()
        security.append(build_timestamp())
        security.append(token.token_element())
        return security


_STRATEGIES = {
    AuthMode.FEDERATION: FederationAuthentication,
    AuthMode.ONLINE_FEDERATION: OnlineFederationAuthentication,
}


def create_authentication(
    config: CrmConfig,
    endpoints: ServiceEndpoints,
    soap_client: SoapClient,
    auth_mode: Optional[AuthMode] = None,
) -> Authentication:
    """Instancia la estrategia para el modo configurado."""
    mode = auth_mode or config.auth_mode
    return _STRATEGIES[AuthMode(mode)](config, endpoints, soap_client)
