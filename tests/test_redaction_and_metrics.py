from services.metrics import (
    counter_value,
    increment_reconcile,
    increment_retry,
    render_prometheus,
    reset_metrics,
)
from services.redaction import mask_account, redact_dict, redact_text


def test_mask_account():
    assert mask_account("+22890009911") == "+228****11"
    assert mask_account("12345") == "****"
    assert mask_account(None) == "****"


def test_redact_text_masks_phones_and_tokens():
    assert redact_text("paying +22890009911 ref CASH-1700000000000-1234") == "paying +228****11 ref CASH-1700000000000-1234"
    assert redact_text("Authorization: Bearer abc") == "[REDACTED]"


def test_redact_dict_masks_sensitive_and_account_keys():
    payload = {
        "X-Signature": "sha256=deadbeef",
        "client_secret": "s",
        "partyId": "+22890009911",
        "recipient": {"phoneNumber": "+22890009911", "name": "Ama"},
        "status": "SUCCESSFUL",
    }
    redacted = redact_dict(payload)
    assert redacted["X-Signature"] == "[REDACTED]"
    assert redacted["client_secret"] == "[REDACTED]"
    assert redacted["partyId"] == "+228****11"
    assert redacted["recipient"] == {"phoneNumber": "+228****11", "name": "Ama"}
    assert redacted["status"] == "SUCCESSFUL"


def test_counters_and_prometheus_rendering():
    increment_retry("orange_money", "scheduled")
    increment_retry("orange_money", "scheduled")
    increment_reconcile("afrimoney", "updated", 3)
    increment_reconcile("afrimoney", "failed", 0)

    assert counter_value("cashout_retries_total", {"provider": "orange_money", "result": "scheduled"}) == 2
    assert counter_value("cashout_reconcile_records_total", {"provider": "afrimoney", "outcome": "failed"}) == 0

    text = render_prometheus()
    assert 'cashout_retries_total{provider="orange_money",result="scheduled"} 2' in text
    assert 'cashout_reconcile_records_total{outcome="updated",provider="afrimoney"} 3' in text

    reset_metrics()
    assert render_prometheus() == ""
