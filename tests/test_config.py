"""Tests for the persisted configuration store."""
import pytest

from newdoli.core.config import ConfigStore, decode_value, encode_value, is_valid_url
from newdoli.core.errors import ConfigurationError, FieldValidationError


@pytest.mark.asyncio
async def test_missing_key_yields_default(config: ConfigStore) -> None:
    assert await config.get("theme") is None
    assert await config.get("theme", "light") == "light"


@pytest.mark.asyncio
async def test_values_round_trip_per_type(config: ConfigStore) -> None:
    await config.set("page_size", 25, "number")
    await config.set("ratio", 0.5, "number")
    await config.set("offline_mode", True, "boolean")
    await config.set("columns", {"third_parties": ["name", "town"]}, "json")
    await config.set("language", "fr_FR")

    assert await config.get("page_size") == 25
    assert await config.get("ratio") == 0.5
    assert await config.get("offline_mode") is True
    assert await config.get("columns") == {"third_parties": ["name", "town"]}
    assert await config.get("language") == "fr_FR"


@pytest.mark.asyncio
async def test_set_is_an_upsert(config: ConfigStore) -> None:
    assert await config.set("language", "fr_FR", description="UI language") == "language"
    await config.set("language", "en_US")

    entries = await config.all()
    assert [e.key for e in entries] == ["language"]
    assert entries[0].value == "en_US"


@pytest.mark.asyncio
async def test_unknown_type_is_rejected(config: ConfigStore) -> None:
    with pytest.raises(FieldValidationError) as exc_info:
        await config.set("x", "y", "blob")
    assert exc_info.value.field == "type"


@pytest.mark.asyncio
async def test_delete_removes_key(config: ConfigStore) -> None:
    await config.set("language", "fr_FR")
    await config.delete("language")
    assert await config.get_entry("language") is None


def test_decode_falls_back_to_default_on_bad_values() -> None:
    assert decode_value("{not json", "json", default={}) == {}
    assert decode_value("abc", "number", default=0) == 0
    assert decode_value("false", "boolean") is False
    assert encode_value(False, "boolean") == "false"
    assert encode_value("TRUE", "boolean") == "true"


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://erp.example.com/", True),
        ("http://localhost:8080", True),
        ("ftp://erp.example.com", False),
        ("erp.example.com", False),
        ("http://exa mple.com", False),
        ("http://erp.example.com\t/", False),
        ("http://erp.example.com:abc/", False),
        ("", False),
        (None, False),
    ],
)
def test_is_valid_url(url, expected) -> None:
    assert is_valid_url(url) is expected


@pytest.mark.asyncio
async def test_configuration_completeness_follows_dolibarr_url(config: ConfigStore) -> None:
    assert await config.get("dolibarr_url") is None
    assert await config.is_configuration_complete() is False

    await config.set("dolibarr_url", "https://x/")

    assert await config.is_configuration_complete() is True


@pytest.mark.asyncio
async def test_invalid_stored_url_is_not_complete(config: ConfigStore) -> None:
    await config.set("dolibarr_url", "not a url")
    assert await config.is_configuration_complete() is False


@pytest.mark.asyncio
async def test_set_dolibarr_url_normalises_trailing_slash(config: ConfigStore) -> None:
    stored = await config.set_dolibarr_url("  https://erp.example.com  ")

    assert stored == "https://erp.example.com/"
    assert await config.dolibarr_url() == "https://erp.example.com/"


@pytest.mark.asyncio
async def test_set_dolibarr_url_rejects_invalid_url(config: ConfigStore) -> None:
    with pytest.raises(FieldValidationError) as exc_info:
        await config.set_dolibarr_url("ftp://erp.example.com")

    assert exc_info.value.field == "dolibarr_url"
    assert await config.dolibarr_url() is None


@pytest.mark.asyncio
async def test_set_dolibarr_url_rejects_unrequestable_hosts(config: ConfigStore) -> None:
    for url in ("http://exa mple.com", "http://erp.example.com:abc/"):
        with pytest.raises(FieldValidationError):
            await config.set_dolibarr_url(url)

    assert await config.dolibarr_url() is None


@pytest.mark.asyncio
async def test_api_url_templating(config: ConfigStore) -> None:
    await config.set_dolibarr_url("https://erp.example.com/dolibarr")

    assert await config.api_url("users/info") == "https://erp.example.com/dolibarr/api/index.php/users/info"
    assert await config.api_url("/login") == "https://erp.example.com/dolibarr/api/index.php/login"


@pytest.mark.asyncio
async def test_api_url_requires_configuration(config: ConfigStore) -> None:
    with pytest.raises(ConfigurationError):
        await config.api_url("login")

    await config.clear_dolibarr_url()
    assert await config.is_configuration_complete() is False
