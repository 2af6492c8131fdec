import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from app.utils.dates import as_utc, epoch_millis
from app.utils.log_mask import mask_account_number, mask_bank_details, mask_email
from app.utils.rate_limit import _get_storage_uri, get_real_ip


def _request(forwarded: str | None = None):
    req = MagicMock()
    req.client.host = "127.0.0.1"
    req.headers = {"X-Forwarded-For": forwarded} if forwarded is not None else {}
    return req


def test_forwarded_header_ignored_without_trusted_proxies():
    with patch.dict(os.environ, {"TRUSTED_PROXY_COUNT": "0"}):
        with patch("app.utils.rate_limit.get_remote_address", return_value="192.0.2.10"):
            assert get_real_ip(_request(forwarded="203.0.113.7")) == "192.0.2.10"


def test_forwarded_header_uses_outermost_trusted_entry():
    with patch.dict(os.environ, {"TRUSTED_PROXY_COUNT": "2"}):
        assert get_real_ip(_request(forwarded="198.51.100.1, 203.0.113.7, 10.0.0.2")) == "203.0.113.7"
        assert get_real_ip(_request(forwarded="203.0.113.7")) == "203.0.113.7"


def test_trusted_proxy_without_forwarded_header():
    with patch.dict(os.environ, {"TRUSTED_PROXY_COUNT": "1"}):
        with patch("app.utils.rate_limit.get_remote_address", return_value="172.16.0.1"):
            assert get_real_ip(_request()) == "172.16.0.1"


def test_limiter_storage():
    with patch("app.config.settings") as mock_settings:
        mock_settings.REDIS_URL = "redis://cache.internal:6379/1"
        assert _get_storage_uri() == "redis://cache.internal:6379/1"
        mock_settings.REDIS_URL = "redis://localhost:6379/0"
        assert _get_storage_uri() is None


def test_mask_email():
    assert mask_email("nimal@example.lk") == "n***@example.lk"
    assert mask_email("a@example.lk") == "a***@example.lk"
    assert mask_email(None) == "***"
    assert mask_email("not-an-email") == "***"


def test_mask_bank_details():
    details = {"bank_name": "Commercial Bank", "account_number": "001234567890"}

    masked = mask_bank_details(details)

    assert masked == {"bank_name": "Commercial Bank", "account_number": "****7890"}
    assert details["account_number"] == "001234567890"
    assert mask_bank_details(None) is None
    assert mask_account_number("") == "****"


def test_as_utc():
    naive = datetime(2026, 3, 1, 10, 0)
    colombo = datetime(2026, 3, 1, 15, 30, tzinfo=timezone(timedelta(hours=5, minutes=30)))

    assert as_utc(naive) == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
    assert as_utc(colombo) == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
    assert as_utc(colombo).tzinfo == timezone.utc


def test_epoch_millis():
    assert epoch_millis(datetime(1970, 1, 1, 0, 0, 1)) == 1000
