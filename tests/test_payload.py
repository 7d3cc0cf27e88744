from conftest import doppus_may2025_payload, hotmart_payload
from services.payload import (
    LIFETIME,
    duration_from_plan_name,
    find_email,
    find_name,
    find_phone,
    find_plan_name,
    find_transaction_id,
    parse_raw_payload,
    to_db_timestamp,
)


def test_parse_raw_payload_variants():
    assert parse_raw_payload({"a": 1}) == {"a": 1}
    assert parse_raw_payload(b'{"a": 1}') == {"a": 1}
    assert parse_raw_payload('{\\"a\\": 1}') == {"a": 1}
    assert parse_raw_payload('"{\\"a\\": 1}"') == {"a": 1}
    assert parse_raw_payload("nao e json") == {"_rawData": "nao e json"}
    assert parse_raw_payload("") == {}
    assert parse_raw_payload(None) == {}


def test_hotmart_fields():
    p = hotmart_payload()
    assert find_email(p) == "ws.advogaciasm@gmail.com"
    assert find_transaction_id(p) == "HP2363007968"
    assert find_name(p) == "Teste Fernando"
    assert find_phone(p) == "5511999990000"
    assert find_plan_name(p) == "plano anual"


def test_email_deep_search_and_normalization():
    p = {"data": {"whatever": {"contact_email": "  Fulano@Exemplo.COM "}}}
    assert find_email(p) == "fulano@exemplo.com"
    # sem chave "email": qualquer string com @ e ponto
    assert find_email({"x": ["nada", {"y": "a@b.com"}]}) == "a@b.com"
    assert find_email({"x": "sem arroba"}) is None


def test_transaction_id_fallbacks():
    assert find_transaction_id({"data": {"transaction": {"code": "TX1"}}}) == "TX1"
    assert find_transaction_id({"transaction": "TX2"}) == "TX2"
    assert find_transaction_id({"foo": {"order_ref": "ORD-9"}}) == "ORD-9"
    assert find_transaction_id({"foo": "bar"}) is None


def test_name_skips_product_and_falls_back_to_email():
    p = {"data": {"product": {"name": "App DesignAuto"}, "client": {"firstName": "Ana", "lastName": "Lima"}}}
    assert find_name(p) == "Ana Lima"
    assert find_name({"data": {"product": {"name": "Produto"}}}, "joao@x.com") == "joao"


def test_doppus_fields_after_wrap():
    p = {"event": "payment.approved", "data": doppus_may2025_payload()}
    assert find_email(p) == "teste.maio2025@exemplo.com"
    assert find_transaction_id(p) == "TX987654321"
    assert find_name(p) == "Cliente Maio 2025"
    assert find_plan_name(p) == "plano anual platinum"


def test_plan_name_default():
    assert find_plan_name({"data": {}}) == "plano premium"


def test_duration_from_plan_name():
    assert duration_from_plan_name("Plano Mensal") == 30
    assert duration_from_plan_name("plano trimestral") == 90
    assert duration_from_plan_name("plano semestral") == 180
    assert duration_from_plan_name("plano anual") == 365
    assert duration_from_plan_name("Acesso Vitalício") == LIFETIME
    assert duration_from_plan_name("plano premium") is None
    assert duration_from_plan_name(None) is None


def test_to_db_timestamp():
    assert to_db_timestamp(1747447464000) == "2025-05-17 02:04:24"
    assert to_db_timestamp(1747447464) == "2025-05-17 02:04:24"
    assert to_db_timestamp("2026-05-17T16:30:00.000Z") == "2026-05-17 16:30:00"
    assert to_db_timestamp("ontem") is None
    assert to_db_timestamp(None) is None
