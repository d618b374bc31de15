import base64
import hashlib
import hmac
from pathlib import Path
import sys

import pytest
from lxml import etree

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from app.crm_client.authentication import (
    TRUST13_ISSUE_ACTION,
    FederationAuthentication,
    OnlineFederationAuthentication,
    create_authentication,
    parse_security_token_response,
)
from app.crm_client.config import AuthMode, CrmConfig
from app.crm_client.endpoints import ServiceEndpoints
from app.crm_client.exceptions import CrmStructuralError
from app.crm_client.soap_client import SoapClient
from app.crm_client.xml_utils import DS_NS, SOAP12_NS, WSA_NS, WSSE_NS, WSU_NS, parse_xml

from _crm_fixtures import DISCOVERY_URL, ORG_DOCUMENTS, ORG_URL, TRUST13_URL, FakeTransport, soap_response

ONLINE_MEX_URL = "https://login.microsoftonline.com/extSTS.srf/mex"
ONLINE_STS_URL = "https://login.microsoftonline.com/RST2.srf"

ONLINE_MEX_WSDL = f"""<?xml version="1.0" encoding="utf-8"?>
<wsdl:definitions xmlns:wsdl="http://schemas.xmlsoap.org/wsdl/"
    xmlns:soap12="http://schemas.xmlsoap.org/wsdl/soap12/">
  <wsdl:service name="SecurityTokenService">
    <wsdl:port name="CustomBinding_IWSTrustFeb2005Async">
      <soap12:address location="{ONLINE_STS_URL}"/>
    </wsdl:port>
  </wsdl:service>
</wsdl:definitions>
"""

# "secret-key" en base64
BINARY_SECRET = "c2VjcmV0LWtleQ=="

TRUST13_RSTR = (
    '<trust:RequestSecurityTokenResponseCollection xmlns:trust="http://docs.oasis-open.org/ws-sx/ws-trust/200512">'
    "<trust:RequestSecurityTokenResponse>"
    "<trust:Lifetime>"
    f'<wsu:Created xmlns:wsu="{WSU_NS}">2024-03-01T10:00:00.000Z</wsu:Created>'
    f'<wsu:Expires xmlns:wsu="{WSU_NS}">2024-03-01T18:00:00.000Z</wsu:Expires>'
    "</trust:Lifetime>"
    "<trust:RequestedSecurityToken>"
    '<xenc:EncryptedData xmlns:xenc="http://www.w3.org/2001/04/xmlenc#" Id="_ed1">'
    "<xenc:CipherData><xenc:CipherValue>Q2lwaGVy</xenc:CipherValue></xenc:CipherData>"
    "</xenc:EncryptedData>"
    "</trust:RequestedSecurityToken>"
    "<trust:RequestedAttachedReference>"
    f'<o:SecurityTokenReference xmlns:o="{WSSE_NS}">'
    "<o:KeyIdentifier>_assertion-1</o:KeyIdentifier>"
    "</o:SecurityTokenReference>"
    "</trust:RequestedAttachedReference>"
    "<trust:RequestedProofToken>"
    f"<trust:BinarySecret>{BINARY_SECRET}</trust:BinarySecret>"
    "</trust:RequestedProofToken>"
    "</trust:RequestSecurityTokenResponse>"
    "</trust:RequestSecurityTokenResponseCollection>"
)

ONLINE_RSTR = (
    f'<S:Envelope xmlns:S="{SOAP12_NS}"><S:Header/><S:Body>'
    '<wst:RequestSecurityTokenResponse xmlns:wst="http://schemas.xmlsoap.org/ws/2005/02/trust">'
    "<wst:RequestedSecurityToken>"
    '<EncryptedData xmlns="http://www.w3.org/2001/04/xmlenc#" Id="Assertion0">'
    "<CipherData><CipherValue>T25saW5l</CipherValue></CipherData>"
    "</EncryptedData>"
    "</wst:RequestedSecurityToken>"
    "</wst:RequestSecurityTokenResponse>"
    "</S:Body></S:Envelope>"
).encode("utf-8")


def _federation_response():
    return (200, soap_response("http://docs.oasis-open.org/ws-sx/ws-trust/200512/RSTRC/IssueFinal", TRUST13_RSTR))


def _strategy(auth_mode, responses, monkeypatch):
    monkeypatch.delenv("CRM_ONLINE_APPLIES_TO", raising=False)
    config = CrmConfig(
        auth_mode=auth_mode,
        discovery_url=DISCOVERY_URL,
        organization_url=ORG_URL,
        username="crmadmin@contoso.com",
        password="secret",
    )
    transport = FakeTransport(
        documents={**ORG_DOCUMENTS, ONLINE_MEX_URL: ONLINE_MEX_WSDL},
        responses=responses,
    )
    soap_client = SoapClient(config, transport=transport)
    endpoints = ServiceEndpoints(config, soap_client.load)
    return create_authentication(config, endpoints, soap_client), transport


def test_parse_security_token_response_reads_proof_and_reference():
    token = parse_security_token_response(soap_response("urn:rstr", TRUST13_RSTR))

    assert token.binary_secret == BINARY_SECRET
    assert token.key_identifier == "_assertion-1"
    assert token.created == "2024-03-01T10:00:00.000Z"
    assert token.expires == "2024-03-01T18:00:00.000Z"
    assert etree.QName(token.token_element()).localname == "EncryptedData"


def test_parse_security_token_response_without_token():
    with pytest.raises(CrmStructuralError, match="RequestedSecurityToken"):
        parse_security_token_response(soap_response("urn:rstr", "<RequestSecurityTokenResponse/>"))


@pytest.mark.parametrize(
    "auth_mode, expected",
    [
        (AuthMode.FEDERATION, FederationAuthentication),
        (AuthMode.ONLINE_FEDERATION, OnlineFederationAuthentication),
    ],
)
def test_create_authentication_picks_strategy_by_mode(auth_mode, expected, monkeypatch):
    strategy, _ = _strategy(auth_mode.value, [], monkeypatch)

    assert type(strategy) is expected


def test_federation_requests_token_from_trust13_endpoint(monkeypatch):
    strategy, transport = _strategy("Federation", [_federation_response()], monkeypatch)

    token = strategy.get_organization_security_token()

    assert token.key_identifier == "_assertion-1"
    address, message, _ = transport.posted[0]
    assert address == TRUST13_URL
    envelope = parse_xml(message)
    assert envelope.findtext(f".//{{{WSA_NS}}}Action") == TRUST13_ISSUE_ACTION
    assert envelope.findtext(f".//{{{WSSE_NS}}}Username") == "crmadmin@contoso.com"
    applies_to = envelope.xpath('//*[local-name()="AppliesTo"]//*[local-name()="Address"]')[0]
    assert applies_to.text == ORG_URL


def test_token_is_cached_until_invalidated(monkeypatch):
    strategy, transport = _strategy(
        "Federation", [_federation_response(), _federation_response()], monkeypatch
    )

    first = strategy.get_organization_security_token()
    assert strategy.get_organization_security_token() is first
    assert len(transport.posted) == 1

    strategy.invalidate_tokens()
    strategy.get_organization_security_token()
    assert len(transport.posted) == 2


def test_federation_without_proof_token_fails(monkeypatch):
    body = TRUST13_RSTR.replace(
        f"<trust:RequestedProofToken><trust:BinarySecret>{BINARY_SECRET}</trust:BinarySecret>"
        "</trust:RequestedProofToken>",
        "",
    )
    strategy, _ = _strategy(
        "Federation",
        [(200, soap_response("http://docs.oasis-open.org/ws-sx/ws-trust/200512/RSTRC/IssueFinal", body))],
        monkeypatch,
    )

    with pytest.raises(CrmStructuralError, match="BinarySecret"):
        strategy.get_organization_security_token()


def test_federation_header_is_signed_with_proof_key(monkeypatch):
    strategy, _ = _strategy("Federation", [_federation_response()], monkeypatch)
    token = strategy.get_organization_security_token()

    security = strategy.get_security_header_node(token)

    names = [etree.QName(child).localname for child in security]
    assert names == ["Timestamp", "EncryptedData", "Signature"]
    assert security.get(f"{{{SOAP12_NS}}}mustUnderstand") == "1"

    timestamp = security[0]
    signature = security[2]
    expected_digest = base64.b64encode(
        hashlib.sha1(etree.tostring(timestamp, method="c14n", exclusive=True)).digest()
    ).decode("ascii")
    assert signature.findtext(f".//{{{DS_NS}}}DigestValue") == expected_digest
    assert signature.find(f".//{{{DS_NS}}}Reference").get("URI") == f"#{timestamp.get(f'{{{WSU_NS}}}Id')}"

    signed_info = signature.find(f"{{{DS_NS}}}SignedInfo")
    expected_value = base64.b64encode(
        hmac.new(
            b"secret-key",
            etree.tostring(signed_info, method="c14n", exclusive=True),
            hashlib.sha1,
        ).digest()
    ).decode("ascii")
    assert signature.findtext(f"{{{DS_NS}}}SignatureValue") == expected_value
    assert signature.findtext(f".//{{{WSSE_NS}}}KeyIdentifier") == "_assertion-1"


def test_online_federation_accepts_response_without_action(monkeypatch):
    strategy, transport = _strategy("OnlineFederation", [(200, ONLINE_RSTR)], monkeypatch)

    token = strategy.get_organization_security_token()

    address, message, _ = transport.posted[0]
    assert address == ONLINE_STS_URL
    applies_to = parse_xml(message).xpath('//*[local-name()="AppliesTo"]//*[local-name()="Address"]')[0]
    assert applies_to.text == "urn:crmna:dynamics.com"
    assert token.binary_secret is None

    security = strategy.get_security_header_node(token)
    names = [etree.QName(child).localname for child in security]
    assert names == ["Timestamp", "EncryptedData"]
