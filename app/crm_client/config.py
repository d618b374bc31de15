"""
Configuración para cliente CRM
"""
import os
from enum import Enum
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


class AuthMode(str, Enum):
    """Modos de autenticación soportados"""
    FEDERATION = "Federation"
    ONLINE_FEDERATION = "OnlineFederation"


class CrmConfig:
    """Configuración de conexión al CRM (discovery, organización y credenciales)"""

    DEFAULT_CONNECTOR_TIMEOUT = 300
    DEFAULT_CACHE_TIME = 28800
    # Máximo de registros por página que acepta RetrieveMultiple
    MAX_CRM_RECORDS = 5000
    DEFAULT_ONLINE_APPLIES_TO = "urn:crmna:dynamics.com"

    def __init__(
        self,
        auth_mode: Optional[str] = None,
        discovery_url: Optional[str] = None,
        organization_url: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ):
        """
        Inicializa la configuración CRM

        Los argumentos tienen prioridad sobre las variables de entorno.

        Args:
            auth_mode: 'Federation' u 'OnlineFederation'
            discovery_url: URL del Discovery Service
            organization_url: URL del Organization Service
            username: Usuario (UPN o dominio\\usuario)
            password: Contraseña
        """
        mode = auth_mode or os.getenv("CRM_AUTH_MODE", AuthMode.FEDERATION.value)
        try:
            self.auth_mode = AuthMode(mode)
        except ValueError:
            valid = [m.value for m in AuthMode]
            raise ValueError(f"Modo de autenticación inválido: {mode}. Debe ser uno de {valid}")

        self.discovery_url = discovery_url or os.getenv("CRM_DISCOVERY_URL") or None
        self.organization_url = organization_url or os.getenv("CRM_ORGANIZATION_URL") or None
        self.username = username or os.getenv("CRM_USERNAME") or None
        self.password = password or os.getenv("CRM_PASSWORD") or None

        # Timeouts
        self.connector_timeout = int(
            os.getenv("CRM_CONNECTOR_TIMEOUT", str(self.DEFAULT_CONNECTOR_TIMEOUT))
        )

        # Cache de esquemas
        self.cache_time = int(os.getenv("CRM_CACHE_TIME", str(self.DEFAULT_CACHE_TIME)))
        self.cache_backend = os.getenv("CRM_CACHE_BACKEND", "memory").lower()
        if self.cache_backend not in ("memory", "file"):
            raise ValueError(
                f"Backend de cache inválido: {self.cache_backend}. Debe ser 'memory' o 'file'"
            )
        self.cache_dir = Path(os.getenv("CRM_CACHE_DIR", ".crm_cache"))

        self.maximum_records = int(os.getenv("CRM_MAX_RECORDS", str(self.MAX_CRM_RECORDS)))

        ca_bundle_path = os.getenv("CRM_CA_BUNDLE_PATH")
        self.ca_bundle_path = Path(ca_bundle_path) if ca_bundle_path else None

        self.online_applies_to = os.getenv(
            "CRM_ONLINE_APPLIES_TO", self.DEFAULT_ONLINE_APPLIES_TO
        )

    def check_connection_settings(self) -> None:
        """
        Verifica que estén los datos mínimos para autenticarse

        Raises:
            ValueError: Si falta usuario, contraseña o (en Federation) la URL de discovery
        """
        if not self.username or not self.password:
            raise ValueError("Faltan credenciales: configure CRM_USERNAME y CRM_PASSWORD")
        if self.auth_mode == AuthMode.FEDERATION and not self.discovery_url:
            raise ValueError("Modo Federation requiere CRM_DISCOVERY_URL")
        if not self.discovery_url and not self.organization_url:
            raise ValueError(
                "Debe configurar CRM_DISCOVERY_URL o CRM_ORGANIZATION_URL"
            )


def get_crm_config(auth_mode: Optional[str] = None) -> CrmConfig:
    """
    Obtiene configuración CRM desde variables de entorno

    Args:
        auth_mode: Modo de autenticación (si no se especifica, usa CRM_AUTH_MODE)

    Returns:
        Configuración CRM
    """
    return CrmConfig(auth_mode=auth_mode)
