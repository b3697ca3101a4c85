from __future__ import annotations

from tenantledger.services.audit import sanitize_metadata


def test_sanitize_metadata_redacts_sensitive_keys_recursively() -> None:
    payload = {
        "operation": "ledger.query",
        "Authorization": "Bearer abc",
        "nested": {"api_key": "k", "client_secret": "s", "note": "keep"},
        "items": [{"password": "p"}, {"name": "ok"}],
        "refresh_token": "t",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["operation"] == "ledger.query"
    assert sanitized["Authorization"] == "[REDACTED]"
    assert sanitized["nested"] == {"api_key": "[REDACTED]", "client_secret": "[REDACTED]", "note": "keep"}
    assert sanitized["items"] == [{"password": "[REDACTED]"}, {"name": "ok"}]
    assert sanitized["refresh_token"] == "[REDACTED]"
    # The input is left untouched.
    assert payload["nested"]["api_key"] == "k"


def test_sanitize_metadata_passes_scalars_through() -> None:
    assert sanitize_metadata("value") == "value"
    assert sanitize_metadata(3) == 3
    assert sanitize_metadata(None) is None
