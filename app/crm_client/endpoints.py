"""
Estado de descubrimiento por servicio (discovery / organization)

Mantiene, por instancia de cliente, los WSDL aplanados, las políticas de
seguridad, las direcciones del STS y los soapAction ya resueltos. Una
instancia no se comparte entre threads.
"""
import logging
from typing import Callable, Dict, List, Optional

import lxml.etree as etree

from .config import AuthMode, CrmConfig
from .exceptions import CrmStateError
from .wsdl_flattener import load_wsdl
from .wsdl_introspect import (
    find_security_policy,
    get_authentication_modes,
    get_federated_security_address,
    get_login_onmicrosoft_address,
    get_online_federation_security_address,
    get_soap_action,
    get_trust_address,
)

logger = logging.getLogger(__name__)

DISCOVERY = "discovery"
ORGANIZATION = "organization"

SERVICE_NAMES = {
    DISCOVERY: "DiscoveryService",
    ORGANIZATION: "OrganizationService",
}


def _wsdl_url(service_url: str) -> str:
    """Agrega ?wsdl a la URL .svc si no trae query."""
    url = (service_url or "").strip()
    if "?" in url:
        return url
    return f"{url}?wsdl"


class ServiceEndpoints:
    """Resuelve y cachea WSDL, políticas y endpoints de autenticación."""

    def __init__(self, config: CrmConfig, load: Callable[[str], bytes]):
        self.config = config
        self._load = load
        self._wsdl: Dict[str, etree._Element] = {}
        self._policies: Dict[str, etree._Element] = {}
        self._auth_addresses: Dict[str, str] = {}
        self._token_endpoints: Dict[str, str] = {}
        self._soap_actions: Dict[str, str] = {}

    def service_url(self, service: str) -> str:
        if service == DISCOVERY:
            url = self.config.discovery_url
        elif service == ORGANIZATION:
            url = self.config.organization_url
        else:
            raise ValueError(f"Servicio inválido: {service}")
        if not url:
            raise CrmStateError(f"No hay URL configurada para el servicio {service}")
        return url

    def get_wsdl(self, service: str) -> etree._Element:
        """WSDL aplanado del servicio (se descarga una sola vez)."""
        if service not in self._wsdl:
            self._wsdl[service] = load_wsdl(_wsdl_url(self.service_url(service)), self._load)
        return self._wsdl[service]

    def get_security_policy(self, service: str) -> etree._Element:
        if service not in self._policies:
            self._policies[service] = find_security_policy(
                self.get_wsdl(service), SERVICE_NAMES[service]
            )
        return self._policies[service]

    def get_authentication_address(self, service: str, auth_mode: AuthMode) -> str:
        """Dirección de metadata del STS que emite tokens para el servicio."""
        key = f"{service}:{auth_mode.value}"
        if key not in self._auth_addresses:
            policy = self.get_security_policy(service)
            if auth_mode == AuthMode.ONLINE_FEDERATION:
                address = get_online_federation_security_address(policy)
            else:
                address = get_federated_security_address(policy)
            logger.info(f"STS para {service} ({auth_mode.value}): {address}")
            self._auth_addresses[key] = address
        return self._auth_addresses[key]

    def get_security_token_endpoint(self, service: str, auth_mode: AuthMode) -> str:
        """Endpoint del STS donde se envía el RequestSecurityToken."""
        key = f"{service}:{auth_mode.value}"
        if key not in self._token_endpoints:
            auth_wsdl = load_wsdl(self.get_authentication_address(service, auth_mode), self._load)
            if auth_mode == AuthMode.ONLINE_FEDERATION:
                endpoint = get_login_onmicrosoft_address(auth_wsdl)
            else:
                endpoint = get_trust_address(auth_wsdl)
            self._token_endpoints[key] = endpoint
        return self._token_endpoints[key]

    def get_soap_action(self, service: str, operation: str) -> str:
        key = f"{service}:{operation}"
        if key not in self._soap_actions:
            self._soap_actions[key] = get_soap_action(
                self.get_wsdl(service), SERVICE_NAMES[service], operation
            )
        return self._soap_actions[key]

    def get_discovery_authentication_mode(self) -> Optional[AuthMode]:
        """Primer modo soportado anunciado por la política del Discovery Service."""
        modes: List[str] = get_authentication_modes(self.get_security_policy(DISCOVERY))
        for mode in modes:
            for candidate in AuthMode:
                if candidate.value == mode:
                    return candidate
        return None
