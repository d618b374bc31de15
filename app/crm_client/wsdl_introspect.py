"""
Introspection de WSDL CRM para extraer lo necesario para autenticar y enviar requests.

Extrae del WSDL (ya aplanado):
- Nodo wsp:Policy de seguridad de un servicio (service -> port -> binding -> PolicyReference)
- Dirección del emisor de tokens (Federation / OnlineFederation)
- Endpoint WS-Trust 1.3 de usuario/contraseña del ADFS
- Endpoint de login de Microsoft Online
- soapAction de una operación
- Modos de autenticación anunciados por la política
"""
import logging
from typing import List
from urllib.parse import urlparse

import lxml.etree as etree

from .exceptions import CrmStructuralError
from .xml_utils import WSU_NS, find_all, find_first, text_content

logger = logging.getLogger(__name__)

TRUST13_USERNAME_PORT = "UserNameWSTrustBinding_IWSTrust13Async"

# Hosts del STS de Microsoft Online
ONLINE_LOGIN_HOSTS = ("login.microsoftonline.com", "login.live.com")

_FEDERATED_WRAPPER = "EndorsingSupportingTokens"
_ONLINE_FEDERATED_WRAPPER = "SignedSupportingTokens"
_ISSUER_ADDRESS_PATH = ("Policy", "IssuedToken", "Issuer", "Metadata", "Address")


def _find_service_binding(wsdl: etree._Element, service_name: str) -> etree._Element:
    """Recorre service[@name] -> primer port con name -> binding con ese name."""
    services = wsdl.xpath('//*[local-name()="service"][@name=$name]', name=service_name)
    if not services:
        raise CrmStructuralError(f"No se encontró la definición del Service {service_name}")

    ports = services[0].xpath('.//*[local-name()="port"][@name]')
    if not ports:
        raise CrmStructuralError(f"No se encontró el binding para el Service {service_name}")
    binding_name = ports[0].get("name")

    bindings = wsdl.xpath('//*[local-name()="binding"][@name=$name]', name=binding_name)
    if not bindings:
        raise CrmStructuralError(f"No se encontró la definición del Binding {binding_name}")
    return bindings[0]


def find_security_policy(wsdl: etree._Element, service_name: str) -> etree._Element:
    """
    Localiza el nodo Policy que aplica al servicio indicado.

    Raises:
        CrmStructuralError: Nombrando el paso que falló (Service, Binding,
            PolicyReference o Policy)
    """
    binding = _find_service_binding(wsdl, service_name)
    binding_name = binding.get("name")

    references = binding.xpath('.//*[local-name()="PolicyReference"][@URI]')
    if not references:
        raise CrmStructuralError(
            f"No se encontró PolicyReference para el Binding {binding_name}"
        )
    policy_id = references[0].get("URI")
    if policy_id.startswith("#"):
        policy_id = policy_id[1:]

    policies = wsdl.xpath(
        '//*[local-name()="Policy"][@wsu:Id=$policy_id]',
        namespaces={"wsu": WSU_NS},
        policy_id=policy_id,
    )
    if not policies:
        raise CrmStructuralError(f"No se encontró la Policy con ID {policy_id}")

    logger.debug(f"Policy de seguridad para {service_name}: {policy_id}")
    return policies[0]


def _resolve_issuer_address(policy: etree._Element, wrapper: str) -> str:
    node = policy
    walked = []
    for segment in (wrapper,) + _ISSUER_ADDRESS_PATH:
        walked.append(segment)
        node = find_first(node, segment)
        if node is None:
            raise CrmStructuralError(
                f"No se encontró {'/'.join(walked)} en la política de seguridad"
            )

    address = (text_content(node) or "").strip()
    if not address:
        raise CrmStructuralError(f"Dirección vacía en {'/'.join(walked)}")
    return address


def get_federated_security_address(policy: etree._Element) -> str:
    """Dirección de metadata del STS (Federation / ADFS)."""
    return _resolve_issuer_address(policy, _FEDERATED_WRAPPER)


def get_online_federation_security_address(policy: etree._Element) -> str:
    """Dirección de metadata del STS (OnlineFederation)."""
    return _resolve_issuer_address(policy, _ONLINE_FEDERATED_WRAPPER)


def get_trust_address(auth_wsdl: etree._Element, port_name: str = TRUST13_USERNAME_PORT) -> str:
    """
    Endpoint de un port del WSDL del STS (por defecto WS-Trust 1.3 usuario/contraseña).

    Raises:
        CrmStructuralError: Si el port o su address no existen
    """
    ports = auth_wsdl.xpath('//*[local-name()="port"][@name=$name]', name=port_name)
    if not ports:
        raise CrmStructuralError(f"No se encontró el port {port_name} en el WSDL del STS")

    addresses = ports[0].xpath('.//*[local-name()="address"][@location]')
    if not addresses:
        raise CrmStructuralError(f"El port {port_name} no tiene address/@location")
    return addresses[0].get("location")


def get_login_onmicrosoft_address(auth_wsdl: etree._Element) -> str:
    """Primer address de port que apunta al login de Microsoft Online."""
    for address in auth_wsdl.xpath(
        '//*[local-name()="port"]//*[local-name()="address"][@location]'
    ):
        location = address.get("location")
        host = (urlparse(location).hostname or "").lower()
        if host in ONLINE_LOGIN_HOSTS:
            return location
    raise CrmStructuralError(
        "No se encontró un endpoint de login de Microsoft Online en el WSDL del STS"
    )


def get_soap_action(wsdl: etree._Element, service_name: str, operation_name: str) -> str:
    """soapAction declarado en el binding del servicio para la operación indicada."""
    binding = _find_service_binding(wsdl, service_name)
    operations = binding.xpath(
        './*[local-name()="operation"][@name=$name]', name=operation_name
    )
    if not operations:
        raise CrmStructuralError(
            f"No se encontró la operación {operation_name} en el Binding {binding.get('name')}"
        )

    actions = operations[0].xpath('.//*[local-name()="operation"][@soapAction]')
    if not actions:
        raise CrmStructuralError(f"La operación {operation_name} no declara soapAction")
    return actions[0].get("soapAction")


def get_authentication_modes(policy: etree._Element) -> List[str]:
    """Modos anunciados en los nodos Authentication de la política (ms-xrm)."""
    return [
        (text_content(node) or "").strip()
        for node in find_all(policy, "Authentication")
        if (text_content(node) or "").strip()
    ]
