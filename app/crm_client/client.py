"""
Cliente para comunicación con los servicios SOAP del CRM

Orquesta discovery, autenticación, envío de requests y parseo de respuestas.
Una instancia mantiene caches propios (WSDL, políticas, tokens, esquemas) y no
debe compartirse entre threads.
"""
import json
import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

import lxml.etree as etree

from .authentication import Authentication, create_authentication
from .config import AuthMode, CrmConfig
from .endpoints import DISCOVERY, ORGANIZATION, ServiceEndpoints
from .entity import Entity
from .exceptions import CrmStateError
from .models import EntitySchema, OrganizationDetail, QueryResultPage, SecurityToken
from .request_generator import (
    generate_create_request,
    generate_delete_request,
    generate_execute_action_request,
    generate_retrieve_all_entities_request,
    generate_retrieve_entity_request,
    generate_retrieve_multiple_request,
    generate_retrieve_organizations_request,
    generate_retrieve_request,
    generate_update_request,
)
from .response_parser import (
    parse_create_response,
    parse_delete_response,
    parse_execute_action_response,
    parse_retrieve_all_entities_response,
    parse_retrieve_entity_response,
    parse_retrieve_multiple_response,
    parse_retrieve_organizations_response,
    parse_retrieve_response,
    parse_update_response,
)
from .schema_cache import ENTITIES_DEFINITIONS_KEY, ENTITY_SCHEMA_KEY, build_schema_cache
from .soap_client import SoapClient, build_soap_envelope
from .xml_utils import EMPTY_GUID, get_page_no

logger = logging.getLogger(__name__)


def build_all_attributes_fetch(entity_type: str) -> str:
    """FetchXML que trae todas las columnas de una entidad."""
    fetch = etree.Element("fetch")
    fetch.set("version", "1.0")
    fetch.set("output-format", "xml-platform")
    fetch.set("mapping", "logical")
    fetch.set("distinct", "false")
    entity = etree.SubElement(fetch, "entity", name=entity_type)
    etree.SubElement(entity, "all-attributes")
    return etree.tostring(fetch, encoding="unicode")


class CrmClient:
    """
    Cliente del Organization / Discovery Service

    Uso:
        with CrmClient(get_crm_config()) as crm:
            page = crm.retrieve_multiple_entities("account")
    """

    def __init__(
        self,
        config: CrmConfig,
        soap_client: Optional[SoapClient] = None,
        cache: Optional[Any] = None,
        authentication: Optional[Authentication] = None,
    ):
        """
        Inicializa el cliente CRM

        Args:
            config: Configuración CRM
            soap_client: Transporte SOAP (por defecto uno nuevo sobre zeep)
            cache: Cache externo de esquemas (get/set); por defecto según config
            authentication: Estrategia de autenticación; por defecto según config.auth_mode
        """
        config.check_connection_settings()
        self.config = config
        self.soap_client = soap_client or SoapClient(config)
        self.endpoints = ServiceEndpoints(config, self.soap_client.load)
        self.authentication = authentication or create_authentication(
            config, self.endpoints, self.soap_client
        )
        self.cache = cache if cache is not None else build_schema_cache(config)
        self._entity_schemas: Dict[str, EntitySchema] = {}

    # ---------------------------------------------------------------------
    # Envío
    # ---------------------------------------------------------------------
    def generate_soap_request(
        self,
        service_uri: str,
        soap_action: str,
        token: SecurityToken,
        body: etree._Element,
    ) -> bytes:
        header = self.authentication.get_security_header_node(token)
        return build_soap_envelope(service_uri, soap_action, header, body)

    def _send(self, service: str, operation: str, body: etree._Element) -> bytes:
        if service == DISCOVERY:
            token = self.authentication.get_discovery_security_token()
        else:
            token = self.authentication.get_organization_security_token()
        service_url = self.endpoints.service_url(service)
        soap_action = self.endpoints.get_soap_action(service, operation)
        envelope = self.generate_soap_request(service_url, soap_action, token, body)
        return self.soap_client.get_soap_response(service_url, envelope)

    def _organization_request(self, operation: str, body: etree._Element) -> bytes:
        return self._send(ORGANIZATION, operation, body)

    # ---------------------------------------------------------------------
    # Discovery
    # ---------------------------------------------------------------------
    def retrieve_organizations(self) -> List[OrganizationDetail]:
        content = self._send(DISCOVERY, "Execute", generate_retrieve_organizations_request())
        return parse_retrieve_organizations_response(content)

    def retrieve_organization(self, web_app_url: str) -> Optional[OrganizationDetail]:
        """Organización cuyo endpoint WebApplication tiene el mismo host que web_app_url."""
        host = (urlparse(web_app_url).hostname or "").lower()
        for organization in self.retrieve_organizations():
            web_application = organization.endpoints.get("WebApplication")
            if web_application and (urlparse(web_application).hostname or "").lower() == host:
                return organization
        return None

    def get_discovery_authentication_mode(self) -> Optional[AuthMode]:
        """Modo de autenticación que anuncia la política del Discovery Service."""
        return self.endpoints.get_discovery_authentication_mode()

    # ---------------------------------------------------------------------
    # Metadata
    # ---------------------------------------------------------------------
    def retrieve_entity_raw(
        self,
        entity_type: str,
        entity_id: Optional[str] = None,
        entity_filters: Optional[str] = None,
        show_unpublished: bool = False,
    ) -> bytes:
        body = generate_retrieve_entity_request(entity_type, entity_id, entity_filters, show_unpublished)
        return self._organization_request("Execute", body)

    def retrieve_entity(
        self,
        entity_type: str,
        entity_id: Optional[str] = None,
        entity_filters: Optional[str] = None,
        show_unpublished: bool = False,
    ) -> EntitySchema:
        content = self.retrieve_entity_raw(entity_type, entity_id, entity_filters, show_unpublished)
        return parse_retrieve_entity_response(content)

    def get_entity_schema(self, logical_name: str) -> EntitySchema:
        """Esquema de la entidad: memoria -> cache externo -> servidor."""
        schema = self._entity_schemas.get(logical_name)
        if schema is not None:
            return schema

        key = ENTITY_SCHEMA_KEY.format(logical_name=logical_name)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Esquema de {logical_name} desde cache")
            schema = EntitySchema.from_bytes(cached)
        else:
            schema = self.retrieve_entity(logical_name)
            self.cache.set(key, schema.to_bytes(), self.config.cache_time)

        self._entity_schemas[logical_name] = schema
        return schema

    def retrieve_all_entities(self) -> List[Dict[str, Optional[str]]]:
        """Definiciones cortas (LogicalName, DisplayName) de todas las entidades."""
        cached = self.cache.get(ENTITIES_DEFINITIONS_KEY)
        if cached is not None:
            return json.loads(cached.decode("utf-8"))

        content = self._organization_request("Execute", generate_retrieve_all_entities_request())
        definitions = parse_retrieve_all_entities_response(content)
        self.cache.set(
            ENTITIES_DEFINITIONS_KEY,
            json.dumps(definitions, ensure_ascii=False).encode("utf-8"),
            self.config.cache_time,
        )
        return definitions

    # ---------------------------------------------------------------------
    # Consultas
    # ---------------------------------------------------------------------
    def retrieve_multiple_raw(
        self,
        query_xml: str,
        paging_cookie: Optional[str] = None,
        limit_count: Optional[int] = None,
        page_number: Optional[int] = None,
    ) -> bytes:
        body = generate_retrieve_multiple_request(
            query_xml,
            paging_cookie,
            limit_count or self.config.maximum_records,
            page_number,
        )
        return self._organization_request("RetrieveMultiple", body)

    def retrieve_multiple(
        self,
        query_xml: str,
        all_pages: bool = True,
        paging_cookie: Optional[str] = None,
        limit_count: Optional[int] = None,
        page_number: Optional[int] = None,
        simple_mode: bool = False,
    ) -> QueryResultPage:
        """
        Ejecuta un FetchXML.

        Con all_pages recorre todas las páginas (se ignora el paging_cookie
        recibido) y devuelve un único resultado con las entidades concatenadas
        y Count sumado. Si el servidor indica MoreRecords sin PagingCookie, se
        genera <cookie page="N"/> para pedir la página siguiente.
        Ese N cuenta desde el cookie recibido (o 1), no desde page_number.
        """
        if all_pages:
            paging_cookie = None

        result: Optional[QueryResultPage] = None
        while True:
            content = self.retrieve_multiple_raw(query_xml, paging_cookie, limit_count, page_number)
            page = parse_retrieve_multiple_response(content, simple_mode=simple_mode)

            if result is not None:
                page.entities = result.entities + page.entities
                page.count += result.count
            result = page

            if result.more_records and not result.paging_cookie:
                page_no = 1 if paging_cookie is None else get_page_no(paging_cookie) + 1
                paging_cookie = f'<cookie page="{page_no}"/>'
                result.paging_cookie = paging_cookie
            else:
                paging_cookie = result.paging_cookie

            if not (result.more_records and all_pages):
                break

        logger.info(f"RetrieveMultiple: {result.count} registros de {result.entity_name}")
        return result

    def retrieve_multiple_simple(
        self,
        query_xml: str,
        all_pages: bool = True,
        paging_cookie: Optional[str] = None,
        limit_count: Optional[int] = None,
        page_number: Optional[int] = None,
    ) -> QueryResultPage:
        return self.retrieve_multiple(
            query_xml, all_pages, paging_cookie, limit_count, page_number, simple_mode=True
        )

    def retrieve_multiple_entities(
        self,
        entity_type: str,
        all_pages: bool = True,
        paging_cookie: Optional[str] = None,
        limit_count: Optional[int] = None,
        page_number: Optional[int] = None,
        simple_mode: bool = False,
    ) -> QueryResultPage:
        """Todos los registros (todas las columnas) de una entidad."""
        return self.retrieve_multiple(
            build_all_attributes_fetch(entity_type),
            all_pages, paging_cookie, limit_count, page_number, simple_mode,
        )

    def retrieve_single(self, query_xml: str) -> Optional[Entity]:
        """Primer registro del FetchXML o None."""
        result = self.retrieve_multiple(query_xml, False, None, 1)
        return result.entities[0] if result.entities else None

    # ---------------------------------------------------------------------
    # CRUD
    # ---------------------------------------------------------------------
    def entity(self, logical_name: str, entity_id: Optional[str] = None) -> Entity:
        return Entity(logical_name, entity_id)

    @staticmethod
    def _require_id(entity: Entity, operation: str) -> None:
        if not entity.id or entity.id == EMPTY_GUID:
            raise CrmStateError(f"{operation} requiere una entidad con ID ({entity.logical_name})")

    def retrieve_raw(self, entity: Entity, field_set: Optional[Iterable[str]] = None) -> bytes:
        self._require_id(entity, "Retrieve")
        body = generate_retrieve_request(entity.logical_name, entity.id, field_set)
        return self._organization_request("Retrieve", body)

    def retrieve(self, entity: Entity, field_set: Optional[Iterable[str]] = None) -> Entity:
        content = self.retrieve_raw(entity, field_set)
        return parse_retrieve_response(content, entity.logical_name)

    def create(self, entity: Entity) -> str:
        """Crea el registro; asigna el ID devuelto a la entidad y limpia los cambios."""
        if entity.id and entity.id != EMPTY_GUID:
            raise CrmStateError(
                f"Create no admite una entidad con ID ({entity.logical_name} {entity.id})"
            )
        content = self._organization_request("Create", generate_create_request(entity))
        entity.id = parse_create_response(content)
        entity.reset()
        logger.info(f"Creado {entity.logical_name} {entity.id}")
        return entity.id

    def update(self, entity: Entity) -> str:
        self._require_id(entity, "Update")
        content = self._organization_request("Update", generate_update_request(entity))
        result = parse_update_response(content)
        entity.reset()
        return result

    def delete(self, entity: Entity) -> bool:
        self._require_id(entity, "Delete")
        content = self._organization_request("Delete", generate_delete_request(entity))
        return parse_delete_response(content)

    def execute_action(
        self,
        request_name: str,
        parameters: Optional[Dict[str, Any]] = None,
        request_type: Optional[str] = None,
    ) -> Dict[str, Optional[str]]:
        """Execute de un request por nombre; devuelve los Results como texto."""
        body = generate_execute_action_request(request_name, parameters, request_type)
        content = self._organization_request("Execute", body)
        return parse_execute_action_response(content)

    def close(self) -> None:
        self.soap_client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
