import pytest
from ecosystem_analytics.exceptions import ClientValidationError
from ecosystem_analytics.validation.events import validate_event, validate_referral
from conftest import make_event, T0


def test_valid_event_is_normalized():
    evt = make_event("install", catalog_item_id="github-mcp")
    data = validate_event(evt)
    assert data.product == "registry"
    assert data.event_type == "install"
    assert data.timestamp == T0
    assert data.catalog_item_id == "github-mcp"


def test_legacy_referral_name_is_accepted():
    evt = make_event("ecosystem_referral", destination="sports")
    data = validate_event(evt)
    assert data.event_type == "referral"
    assert data.referral_destination == "sports"


def test_timezone_aware_timestamp_stored_as_naive_utc():
    evt = make_event()
    evt["timestamp"] = "2025-03-10T16:00:00+02:00"
    assert validate_event(evt).timestamp == T0


def test_missing_timestamp_defaults_to_now():
    evt = make_event()
    del evt["timestamp"]
    assert validate_event(evt).timestamp is not None


@pytest.mark.parametrize("payload, reason", [
    ("not-a-dict", "not_an_object"),
    ({"product": "registry", "event_type": "install"}, "missing_required:event_id"),
])
def test_structural_rejections(payload, reason):
    with pytest.raises(ClientValidationError) as ei:
        validate_event(payload)
    assert ei.value.reason == reason


def test_unknown_product_rejected_with_event_id():
    evt = make_event(product="nope")
    with pytest.raises(ClientValidationError) as ei:
        validate_event(evt)
    assert ei.value.reason.startswith("validation_error:product")
    assert ei.value.event_id == evt["event_id"]


def test_too_many_metadata_keys():
    evt = make_event(**{f"k{i}": i for i in range(5)})
    with pytest.raises(ClientValidationError) as ei:
        validate_event(evt, max_metadata_keys=4)
    assert ei.value.reason == "too_many_metadata_keys"


def test_referral_checks():
    with pytest.raises(ClientValidationError, match="self_referral"):
        validate_referral("registry", "registry")
    with pytest.raises(ClientValidationError, match="missing_referral_destination"):
        validate_referral("registry", None)
    with pytest.raises(ClientValidationError, match="unknown_referral_destination"):
        validate_referral("registry", "flexabrain")
    validate_referral("registry", "brain")
