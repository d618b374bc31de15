"""
Módulo cliente para integración con Dynamics CRM (SOAP 2011: Discovery y Organization Service)
"""
from .config import AuthMode, CrmConfig, get_crm_config
from .client import CrmClient, build_all_attributes_fetch
from .entity import Entity
from .authentication import (
    Authentication,
    FederationAuthentication,
    OnlineFederationAuthentication,
    create_authentication,
)
from .soap_client import SoapClient, build_soap_envelope, check_soap_response
from .rest_client import GraphClient
from .schema_cache import FileSchemaCache, MemorySchemaCache
from .models import (
    AliasedValue,
    EntityReference,
    EntitySchema,
    FormattedValue,
    OptionSetValue,
    OrganizationDetail,
    QueryResultPage,
    SecurityToken,
)
from .exceptions import (
    CrmException,
    CrmStructuralError,
    CrmTransportError,
    CrmProtocolFault,
    CrmStateError,
)

__all__ = [
    'AuthMode',
    'CrmConfig',
    'get_crm_config',
    'CrmClient',
    'build_all_attributes_fetch',
    'Entity',
    'Authentication',
    'FederationAuthentication',
    'OnlineFederationAuthentication',
    'create_authentication',
    'SoapClient',
    'build_soap_envelope',
    'check_soap_response',
    'GraphClient',
    'FileSchemaCache',
    'MemorySchemaCache',
    'AliasedValue',
    'EntityReference',
    'EntitySchema',
    'FormattedValue',
    'OptionSetValue',
    'OrganizationDetail',
    'QueryResultPage',
    'SecurityToken',
    'CrmException',
    'CrmStructuralError',
    'CrmTransportError',
    'CrmProtocolFault',
    'CrmStateError',
]
