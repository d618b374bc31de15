from datetime import datetime
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from app.crm_client.entity import Entity
from app.crm_client.exceptions import CrmStructuralError
from app.crm_client.models import AliasedValue, EntityReference, FormattedValue
from app.crm_client.response_parser import (
    add_attributes,
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
from app.crm_client.xml_utils import parse_xml

from _crm_fixtures import ENTITY_METADATA, entity_xml, retrieve_multiple_body, soap_response

NS = (
    'xmlns:a="http://schemas.microsoft.com/xrm/2011/Contracts" '
    'xmlns:b="http://schemas.datacontract.org/2004/07/System.Collections.Generic" '
    'xmlns:i="http://www.w3.org/2001/XMLSchema-instance" '
    'xmlns:c="http://www.w3.org/2001/XMLSchema"'
)

CONTACT_ENTITY = (
    "<a:Entity>"
    '<a:Attributes xmlns:b="http://schemas.datacontract.org/2004/07/System.Collections.Generic">'
    '<a:KeyValuePairOfstringanyType><b:key>contactid</b:key><b:value i:type="e:guid" '
    'xmlns:e="http://schemas.microsoft.com/2003/10/Serialization/">11111111-1111-1111-1111-111111111111</b:value>'
    "</a:KeyValuePairOfstringanyType>"
    '<a:KeyValuePairOfstringanyType><b:key>statuscode</b:key><b:value i:type="a:OptionSetValue">'
    "<a:Value>1</a:Value></b:value></a:KeyValuePairOfstringanyType>"
    '<a:KeyValuePairOfstringanyType><b:key>parentcustomerid</b:key><b:value i:type="a:EntityReference">'
    "<a:Id>22222222-2222-2222-2222-222222222222</a:Id><a:LogicalName>account</a:LogicalName>"
    "<a:Name>Contoso</a:Name></b:value></a:KeyValuePairOfstringanyType>"
    '<a:KeyValuePairOfstringanyType><b:key>createdon</b:key><b:value i:type="c:dateTime" '
    'xmlns:c="http://www.w3.org/2001/XMLSchema">2024-03-01T10:20:30Z</b:value>'
    "</a:KeyValuePairOfstringanyType>"
    "</a:Attributes>"
    '<a:EntityState i:nil="true"/>'
    '<a:FormattedValues xmlns:b="http://schemas.datacontract.org/2004/07/System.Collections.Generic">'
    "<a:KeyValuePairOfstringstring><b:key>statuscode</b:key><b:value>Active</b:value>"
    "</a:KeyValuePairOfstringstring>"
    "</a:FormattedValues>"
    "<a:Id>11111111-1111-1111-1111-111111111111</a:Id>"
    "<a:LogicalName>contact</a:LogicalName>"
    "</a:Entity>"
)


def _aliased(key: str, entity: str, attribute: str, value: str) -> str:
    return (
        f"<a:KeyValuePairOfstringanyType><b:key>{key}</b:key>"
        '<b:value i:type="a:AliasedValue">'
        f"<a:AttributeLogicalName>{attribute}</a:AttributeLogicalName>"
        f"<a:EntityLogicalName>{entity}</a:EntityLogicalName>"
        "<a:NeedFormatting>true</a:NeedFormatting>"
        '<a:ReturnType i:nil="true"/>'
        f'<a:Value i:type="c:string">{value}</a:Value>'
        "</b:value></a:KeyValuePairOfstringanyType>"
    )


def _pairs(xml: str):
    root = parse_xml(f"<a:Attributes {NS}>{xml}</a:Attributes>")
    return list(root)


def test_raw_value_and_formatted_value_are_merged():
    page = parse_retrieve_multiple_response(
        soap_response("urn:action", retrieve_multiple_body(CONTACT_ENTITY, False, entity_name="contact")),
        simple_mode=True,
    )

    record = page.entities[0]
    assert record["statuscode"] == FormattedValue(value=1, formatted_value="Active")


def test_tagged_values_are_decoded():
    page = parse_retrieve_multiple_response(
        soap_response("urn:action", retrieve_multiple_body(CONTACT_ENTITY, False, entity_name="contact")),
        simple_mode=True,
    )

    record = page.entities[0]
    assert record["contactid"] == "11111111-1111-1111-1111-111111111111"
    assert record["parentcustomerid"] == EntityReference(
        "account", "22222222-2222-2222-2222-222222222222", "Contoso"
    )
    assert record["createdon"] == datetime(2024, 3, 1, 10, 20, 30)


def test_entity_mode_returns_entities_with_id():
    page = parse_retrieve_multiple_response(
        soap_response("urn:action", retrieve_multiple_body(CONTACT_ENTITY, False, entity_name="contact"))
    )

    entity = page.entities[0]
    assert isinstance(entity, Entity)
    assert entity.logical_name == "contact"
    assert entity.id == "11111111-1111-1111-1111-111111111111"
    assert entity.changed_attributes == {}


def test_aliased_values_are_grouped_by_alias():
    target = add_attributes(
        {},
        _pairs(
            _aliased("c.fullname", "contact", "fullname", "Jane Doe")
            + _aliased("c.emailaddress1", "contact", "emailaddress1", "jane@contoso.com")
        ),
    )

    assert list(target) == ["c"]
    assert target["c"] == AliasedValue(
        "contact", {"fullname": "Jane Doe", "emailaddress1": "jane@contoso.com"}
    )


def test_duplicate_raw_key_keeps_previous_as_formatted_value():
    target = {"name": "Contoso Ltd."}

    add_attributes(
        target,
        _pairs('<a:KeyValuePairOfstringanyType><b:key>name</b:key><b:value i:type="c:string">Contoso</b:value>'
               "</a:KeyValuePairOfstringanyType>"),
    )

    assert target["name"] == FormattedValue(value="Contoso", formatted_value="Contoso Ltd.")


def test_retrieve_multiple_reads_paging_fields():
    cookie = '<cookie page="1"><accountid last="{A}" first="{B}" /></cookie>'
    body = retrieve_multiple_body(
        entity_xml("a1", "One") + entity_xml("a2", "Two"), True, paging_cookie="&lt;cookie page=&quot;1&quot;&gt;&lt;accountid last=&quot;{A}&quot; first=&quot;{B}&quot; /&gt;&lt;/cookie&gt;"
    )

    page = parse_retrieve_multiple_response(soap_response("urn:action", body), simple_mode=True)

    assert page.entity_name == "account"
    assert page.more_records is True
    assert page.paging_cookie == cookie
    assert page.count == 2
    assert [record["name"] for record in page.entities] == ["One", "Two"]


def test_retrieve_multiple_without_result_node():
    with pytest.raises(CrmStructuralError, match="RetrieveMultipleResponse"):
        parse_retrieve_multiple_response(soap_response("urn:action", "<OtherResponse/>"))


def test_retrieve_response_returns_entity():
    body = (
        '<RetrieveResponse xmlns="http://schemas.microsoft.com/xrm/2011/Contracts/Services">'
        f'<RetrieveResult {NS}>'
        '<a:Attributes><a:KeyValuePairOfstringanyType><b:key>name</b:key>'
        '<b:value i:type="c:string">Contoso</b:value></a:KeyValuePairOfstringanyType></a:Attributes>'
        "<a:FormattedValues/><a:Id>33333333-3333-3333-3333-333333333333</a:Id>"
        "<a:LogicalName>account</a:LogicalName>"
        "</RetrieveResult></RetrieveResponse>"
    )

    entity = parse_retrieve_response(soap_response("urn:action", body))

    assert entity.logical_name == "account"
    assert entity.id == "33333333-3333-3333-3333-333333333333"
    assert entity["name"] == "Contoso"


def test_create_update_delete_responses():
    create = soap_response(
        "urn:action",
        '<CreateResponse xmlns="http://schemas.microsoft.com/xrm/2011/Contracts/Services">'
        "<CreateResult>44444444-4444-4444-4444-444444444444</CreateResult></CreateResponse>",
    )
    update = soap_response(
        "urn:action", '<UpdateResponse xmlns="http://schemas.microsoft.com/xrm/2011/Contracts/Services"/>'
    )
    delete = soap_response(
        "urn:action", '<DeleteResponse xmlns="http://schemas.microsoft.com/xrm/2011/Contracts/Services"/>'
    )

    assert parse_create_response(create) == "44444444-4444-4444-4444-444444444444"
    assert "UpdateResponse" in parse_update_response(update)
    assert parse_delete_response(delete) is True


@pytest.mark.parametrize(
    "parser, node",
    [
        (parse_create_response, "CreateResponse"),
        (parse_update_response, "UpdateResponse"),
        (parse_delete_response, "DeleteResponse"),
        (parse_execute_action_response, "ExecuteResult"),
    ],
)
def test_missing_top_level_node_is_named(parser, node):
    with pytest.raises(CrmStructuralError, match=node):
        parser(soap_response("urn:action", "<SomethingElse/>"))


def test_execute_action_maps_results():
    body = (
        '<ExecuteResponse xmlns="http://schemas.microsoft.com/xrm/2011/Contracts/Services">'
        f'<ExecuteResult i:type="c:WhoAmIResponse" {NS}>'
        "<a:ResponseName>WhoAmI</a:ResponseName><a:Results>"
        '<a:KeyValuePairOfstringanyType><b:key>UserId</b:key><b:value i:type="e:guid" '
        'xmlns:e="http://schemas.microsoft.com/2003/10/Serialization/">55555555-5555-5555-5555-555555555555</b:value>'
        "</a:KeyValuePairOfstringanyType>"
        '<a:KeyValuePairOfstringanyType><b:key>BusinessUnitId</b:key><b:value i:type="e:guid" '
        'xmlns:e="http://schemas.microsoft.com/2003/10/Serialization/">66666666-6666-6666-6666-666666666666</b:value>'
        "</a:KeyValuePairOfstringanyType>"
        "</a:Results></ExecuteResult></ExecuteResponse>"
    )

    assert parse_execute_action_response(soap_response("urn:action", body)) == {
        "UserId": "55555555-5555-5555-5555-555555555555",
        "BusinessUnitId": "66666666-6666-6666-6666-666666666666",
    }




def test_retrieve_entity_builds_schema():
    schema = parse_retrieve_entity_response(soap_response("urn:action", ENTITY_METADATA))

    assert schema.logical_name == "account"
    assert schema.display_name == "Account"
    assert schema.display_collection_name == "Accounts"
    assert schema.object_type_code == 1
    assert schema.primary_name_attribute == "name"
    assert schema.mandatory_fields == ["name"]
    assert schema.fields["name"]["label"] == "Account Name"
    assert schema.option_sets == {"statuscode": {1: "Active", 2: "Inactive"}}
    assert schema.many_to_one[0]["ReferencingAttribute"] == "parentaccountid"


def test_retrieve_entity_requires_entity_metadata_value():
    body = ENTITY_METADATA.replace('i:type="c:EntityMetadata"', 'i:type="c:Other"')

    with pytest.raises(CrmStructuralError, match="EntityMetadata"):
        parse_retrieve_entity_response(soap_response("urn:action", body))


def test_retrieve_entity_requires_typed_execute_result():
    body = ENTITY_METADATA.replace("a:RetrieveEntityResponse", "a:OtherResponse")

    with pytest.raises(CrmStructuralError, match="RetrieveEntityResponse"):
        parse_retrieve_entity_response(soap_response("urn:action", body))


def test_retrieve_all_entities_keeps_advanced_find_entities():
    body = (
        '<ExecuteResponse xmlns="http://schemas.microsoft.com/xrm/2011/Contracts/Services">'
        '<ExecuteResult i:type="a:RetrieveAllEntitiesResponse" '
        'xmlns:a="http://schemas.microsoft.com/xrm/2011/Contracts" '
        'xmlns:i="http://www.w3.org/2001/XMLSchema-instance">'
        '<a:Results xmlns:b="http://schemas.datacontract.org/2004/07/System.Collections.Generic">'
        "<a:KeyValuePairOfstringanyType><b:key>EntityMetadata</b:key>"
        '<b:value i:type="c:ArrayOfEntityMetadata" xmlns:c="http://schemas.microsoft.com/xrm/2011/Metadata">'
        "<c:EntityMetadata><c:DisplayName><a:UserLocalizedLabel><a:Label>Account</a:Label></a:UserLocalizedLabel>"
        "</c:DisplayName><c:IsValidForAdvancedFind>true</c:IsValidForAdvancedFind>"
        "<c:LogicalName>account</c:LogicalName></c:EntityMetadata>"
        "<c:EntityMetadata><c:IsValidForAdvancedFind>false</c:IsValidForAdvancedFind>"
        "<c:LogicalName>systemform</c:LogicalName></c:EntityMetadata>"
        "</b:value></a:KeyValuePairOfstringanyType></a:Results></ExecuteResult></ExecuteResponse>"
    )

    assert parse_retrieve_all_entities_response(soap_response("urn:action", body)) == [
        {"LogicalName": "account", "DisplayName": "Account"}
    ]


def test_retrieve_organizations_reads_details():
    body = (
        '<ExecuteResponse xmlns="http://schemas.microsoft.com/xrm/2011/Contracts/Discovery">'
        '<ExecuteResult i:type="RetrieveOrganizationsResponse" xmlns:i="http://www.w3.org/2001/XMLSchema-instance">'
        "<Details><OrganizationDetail>"
        '<Endpoints xmlns:b="http://schemas.datacontract.org/2004/07/System.Collections.Generic">'
        "<KeyValuePairOfEndpointTypestringztYlk6OT><b:key>WebApplication</b:key>"
        "<b:value>https://crm.contoso.com/Contoso/</b:value></KeyValuePairOfEndpointTypestringztYlk6OT>"
        "<KeyValuePairOfEndpointTypestringztYlk6OT><b:key>OrganizationService</b:key>"
        "<b:value>https://crm.contoso.com/Contoso/XRMServices/2011/Organization.svc</b:value>"
        "</KeyValuePairOfEndpointTypestringztYlk6OT>"
        "</Endpoints>"
        "<FriendlyName>Contoso</FriendlyName><OrganizationId>77777777-7777-7777-7777-777777777777</OrganizationId>"
        "<OrganizationVersion>5.0.9690.4376</OrganizationVersion><State>Enabled</State>"
        "<UniqueName>contoso</UniqueName><UrlName>Contoso</UrlName>"
        "</OrganizationDetail></Details></ExecuteResult></ExecuteResponse>"
    )

    organizations = parse_retrieve_organizations_response(soap_response("urn:action", body))

    assert len(organizations) == 1
    assert organizations[0].unique_name == "contoso"
    assert organizations[0].endpoints["WebApplication"] == "https://crm.contoso.com/Contoso/"
    assert organizations[0].state == "Enabled"
