from simquery.workflows.extract import NO_VALUE, QueryResult, RawDocument, decode_document, extract
from simquery.workflows.query_config import DEFAULT_FIELD_SELECTORS

from fakes import EMPTY_PAGE, ICCID, crm_page


def _doc(html: str) -> RawDocument:
    return RawDocument(identifier=ICCID, html=html, url="http://crm.test/q", method="http")


def test_extract_reads_every_field():
    result = extract(_doc(crm_page()))

    assert result.iccid == ICCID
    assert result.card_type == "Prepaid 4G"
    assert result.location == "Hong Kong"
    assert result.status == "Active"
    assert result.activation_time == "2024-01-05 10:00"
    assert result.cancellation_time == "2025-01-05 10:00"
    assert result.usage_mb == "512.25"
    assert not result.is_empty


def test_missing_nodes_become_sentinel_and_empty():
    result = extract(_doc(EMPTY_PAGE))

    assert result.card_type == NO_VALUE
    assert result.usage_mb == NO_VALUE
    assert result.is_empty
    assert NO_VALUE != ""


def test_blank_cell_is_sentinel_not_empty_string():
    result = extract(_doc(crm_page(status="   ")))

    assert result.status == NO_VALUE
    assert not result.is_empty


def test_one_primary_field_is_enough_to_be_non_empty():
    html = crm_page(card_type="", location="", status="Active")

    assert not extract(_doc(html)).is_empty


def test_bad_selector_only_spoils_its_own_field():
    selectors = (("card_type", "td:::nope"),) + DEFAULT_FIELD_SELECTORS[1:]

    result = extract(_doc(crm_page()), selectors)

    assert result.card_type == NO_VALUE
    assert result.location == "Hong Kong"


def test_snippet_is_truncated():
    html = crm_page()

    result = extract(_doc(html), snippet_length=40)

    assert result.raw_snippet == html[:40]
    assert result.method == "http"


def test_to_dict_uses_wire_keys():
    payload = QueryResult(iccid=ICCID, status="Active").to_dict()

    assert set(payload) == {
        "iccid",
        "cardType",
        "location",
        "status",
        "activationTime",
        "cancellationTime",
        "usageMB",
        "rawData",
    }
    assert payload["usageMB"] == NO_VALUE


def test_decode_document_prefers_site_encoding():
    raw = "卡類型".encode("big5")

    assert decode_document(raw, encoding="big5", declared="utf-8") == "卡類型"
    assert decode_document(raw, encoding="no-such-codec", declared="big5") == "卡類型"
    assert decode_document(b"ok", encoding=None) == "ok"



def test_decode_document_falls_back_when_site_encoding_does_not_fit():
    raw = "<html><body>請登錄</body></html>".encode("utf-8")

    assert decode_document(raw, encoding="big5", declared="utf-8") == "<html><body>請登錄</body></html>"
