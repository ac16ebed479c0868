import pytest
import requests

from loma.api_client import ApiClient
from loma.errors import ApiError, NotAuthenticatedError

BASE = "http://loma.test"


@pytest.fixture
def api(settings):
    return ApiClient(settings=settings)


def test_get_decodes_json_and_sends_accept_only(api, requests_mock):
    requests_mock.get(f"{BASE}/api/patients", json=[{"id": 1}])

    assert api.get("/api/patients") == [{"id": 1}]

    req = requests_mock.request_history[0]
    assert req.headers["Accept"] == "application/json"
    assert "Content-Type" not in req.headers


def test_post_sends_json_body(api, requests_mock):
    requests_mock.post(f"{BASE}/api/tasks", json={"id": 5})

    api.post("/api/tasks", {"title": "Call back"})

    req = requests_mock.request_history[0]
    assert req.headers["Content-Type"] == "application/json"
    assert req.json() == {"title": "Call back"}


def test_query_params_are_passed(api, requests_mock):
    requests_mock.get(f"{BASE}/api/clinical-sessions", json=[])

    api.get("/api/clinical-sessions", params={"client": 42})

    assert requests_mock.request_history[0].qs == {"client": ["42"]}


def test_401_raises_not_authenticated(api, requests_mock):
    requests_mock.get(f"{BASE}/api/patients", status_code=401, json={"message": "expired"})

    with pytest.raises(NotAuthenticatedError) as excinfo:
        api.get("/api/patients")

    assert excinfo.value.message == "Not authenticated"
    assert excinfo.value.status_code == 401


def test_error_prefers_message_then_error(api, requests_mock):
    requests_mock.post(
        f"{BASE}/api/stripe/create-invoice",
        status_code=400,
        json={"error": "Business banking setup incomplete", "message": "Finish banking setup"},
    )
    requests_mock.post(f"{BASE}/api/cms1500-claims", status_code=422, json={"error": "Invalid NPI"})

    with pytest.raises(ApiError) as first:
        api.post("/api/stripe/create-invoice", {})
    with pytest.raises(ApiError) as second:
        api.post("/api/cms1500-claims", {})

    assert first.value.message == "Finish banking setup"
    assert first.value.error_code == "Business banking setup incomplete"
    assert first.value.status_code == 400
    assert second.value.message == "Invalid NPI"


def test_error_falls_back_to_status_text(api, requests_mock):
    requests_mock.get(f"{BASE}/api/meetings", status_code=503, json={})
    requests_mock.get(f"{BASE}/api/tasks", status_code=500, text="Server exploded")

    with pytest.raises(ApiError) as empty:
        api.get("/api/meetings")
    with pytest.raises(ApiError) as text:
        api.get("/api/tasks")

    assert empty.value.message == "API request failed: 503"
    assert text.value.message == "Server exploded"


def test_transport_failure_has_no_status(api, requests_mock):
    requests_mock.get(f"{BASE}/api/patients", exc=requests.exceptions.ConnectTimeout)

    with pytest.raises(ApiError) as excinfo:
        api.get("/api/patients")

    assert excinfo.value.status_code is None
    assert not isinstance(excinfo.value, NotAuthenticatedError)


def test_non_json_response_is_returned_as_text(api, requests_mock):
    requests_mock.get(f"{BASE}/health", text="ok", headers={"Content-Type": "text/plain"})

    assert api.get("/health") == "ok"


def test_malformed_json_is_an_error(api, requests_mock):
    requests_mock.get(
        f"{BASE}/api/invoices", text="{not json", headers={"Content-Type": "application/json"}
    )

    with pytest.raises(ApiError, match="Malformed JSON response"):
        api.get("/api/invoices")


def test_clear_cache_flag_invokes_callback(api, requests_mock):
    calls = []
    api.on_clear_cache(lambda: calls.append(True))
    requests_mock.put(f"{BASE}/api/patients/3", json={"success": True, "clearCache": True})

    api.put("/api/patients/3", {"status": "active"})

    assert calls == [True]


def test_url_joins_base_and_path(settings):
    api = ApiClient("http://loma.test/", settings=settings)

    assert api.url("api/tasks") == "http://loma.test/api/tasks"
    assert api.url("https://other.test/x") == "https://other.test/x"
