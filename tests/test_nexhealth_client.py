"""Tests for the NexHealthClient service."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx
import pytest

from dental_scheduler.services.nexhealth_client import (
    INITIAL_BACKOFF_SECONDS,
    MAX_RETRIES,
    NEXHEALTH_ACCEPT_HEADER,
    NexHealthAPIError,
    NexHealthClient,
    extract_appointment_id,
    extract_patient_id,
)

# ── Helpers ──────────────────────────────────────────────────────────


def _mock_response(data: dict, status_code: int = 200) -> MagicMock:
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = data
    mock.text = str(data)
    return mock


SLOTS_BODY = {
    "code": True,
    "data": [
        {
            "lid": 4001,
            "pid": 301,
            "slots": [{"time": "2025-07-15T09:00:00.000-05:00", "end_time": "2025-07-15T09:30:00.000-05:00", "operatory_id": 501}],
        }
    ],
}


# ── Tests: headers ───────────────────────────────────────────────────


def test_client_sends_versioned_accept_and_bearer_token():
    client = NexHealthClient(api_key="secret", base_url="https://nexhealth.test")
    assert client._client.headers["Accept"] == NEXHEALTH_ACCEPT_HEADER
    assert client._client.headers["Authorization"] == "Bearer secret"


# ── Tests: get_appointment_slots ─────────────────────────────────────


class TestGetAppointmentSlots:
    def test_returns_provider_groups(self):
        client = NexHealthClient(api_key="k")

        with patch.object(client._client, "request", return_value=_mock_response(SLOTS_BODY)):
            groups = client.get_appointment_slots(
                "acme", start_date="2025-07-15", days=1, location_id="4001",
                provider_ids=["301"], slot_length=30,
            )
        assert groups[0]["pid"] == 301
        assert len(groups[0]["slots"]) == 1

    def test_query_parameters(self):
        client = NexHealthClient(api_key="k")

        with patch.object(client._client, "request", return_value=_mock_response(SLOTS_BODY)) as mock_req:
            client.get_appointment_slots(
                "acme", start_date="2025-07-15", days=2, location_id="4001",
                provider_ids=["301", "302"], operatory_ids=["501"], slot_length=45,
            )

        method, path = mock_req.call_args.args
        params = mock_req.call_args.kwargs["params"]
        assert (method, path) == ("GET", "/appointment_slots")
        assert params["subdomain"] == "acme"
        assert params["lids[]"] == ["4001"]
        assert params["pids[]"] == ["301", "302"]
        assert params["operatory_ids[]"] == ["501"]
        assert params["slot_length"] == 45
        assert params["overlapping_operatory_slots"] == "false"
        assert "appointment_type_id" not in params

    def test_operatory_ids_omitted_when_empty(self):
        client = NexHealthClient(api_key="k")

        with patch.object(client._client, "request", return_value=_mock_response(SLOTS_BODY)) as mock_req:
            client.get_appointment_slots(
                "acme", start_date="2025-07-15", days=1, location_id="4001",
                provider_ids=["301"], operatory_ids=[], slot_length=30,
            )

        assert "operatory_ids[]" not in mock_req.call_args.kwargs["params"]


# ── Tests: create_appointment ────────────────────────────────────────


class TestCreateAppointment:
    def test_posts_nested_appt(self):
        client = NexHealthClient(api_key="k")
        appointment = {"patient_id": 1, "provider_id": 2, "start_time": "2025-07-15T19:05:00Z"}

        with patch.object(client._client, "request", return_value=_mock_response({"data": {"id": 9}})) as mock_req:
            response = client.create_appointment("acme", location_id="4001", appointment=appointment)

        assert extract_appointment_id(response) == "9"
        assert mock_req.call_args.args == ("POST", "/appointments")
        assert mock_req.call_args.kwargs["json"] == {"appt": appointment}
        params = mock_req.call_args.kwargs["params"]
        assert params["location_id"] == "4001"
        assert params["notify_patient"] == "false"

    @patch("dental_scheduler.services.nexhealth_client.time.sleep")
    def test_never_retries_on_server_error(self, mock_sleep):
        client = NexHealthClient(api_key="k")

        with patch.object(
            client._client, "request", return_value=_mock_response({"error": "down"}, 503),
        ) as mock_req:
            with pytest.raises(NexHealthAPIError) as exc_info:
                client.create_appointment("acme", location_id="4001", appointment={})

        assert exc_info.value.status_code == 503
        assert mock_req.call_count == 1
        mock_sleep.assert_not_called()

    @patch("dental_scheduler.services.nexhealth_client.time.sleep")
    def test_never_retries_on_timeout(self, mock_sleep):
        client = NexHealthClient(api_key="k")

        with patch.object(client._client, "request", side_effect=httpx.TimeoutException("timeout")) as mock_req:
            with pytest.raises(NexHealthAPIError):
                client.create_appointment("acme", location_id="4001", appointment={})

        assert mock_req.call_count == 1
        mock_sleep.assert_not_called()


# ── Tests: search_patients ───────────────────────────────────────────


class TestSearchPatients:
    @pytest.mark.parametrize(
        "body",
        [
            {"data": {"patients": [{"id": 1}]}},
            {"data": [{"id": 1}]},
        ],
    )
    def test_response_shapes(self, body):
        client = NexHealthClient(api_key="k")

        with patch.object(client._client, "request", return_value=_mock_response(body)):
            patients = client.search_patients("acme", location_id="4001", name="Bob Ross", date_of_birth="1998-10-30")

        assert patients == [{"id": 1}]

    def test_query_parameters(self):
        client = NexHealthClient(api_key="k")

        with patch.object(client._client, "request", return_value=_mock_response({"data": []})) as mock_req:
            client.search_patients("acme", location_id="4001", name="Bob Ross", date_of_birth="1998-10-30")

        params = mock_req.call_args.kwargs["params"]
        assert params["name"] == "Bob Ross"
        assert params["inactive"] == "false"
        assert params["non_patient"] == "false"
        assert params["per_page"] == 300


# ── Tests: retry logic ───────────────────────────────────────────────


class TestRetryLogic:
    @patch("dental_scheduler.services.nexhealth_client.time.sleep")
    def test_retries_on_timeout(self, mock_sleep):
        client = NexHealthClient(api_key="k")

        with patch.object(
            client._client,
            "request",
            side_effect=[httpx.TimeoutException("timeout"), _mock_response(SLOTS_BODY)],
        ):
            groups = client.get_appointment_slots(
                "acme", start_date="2025-07-15", days=1, location_id="4001",
                provider_ids=["301"], slot_length=30,
            )

        assert len(groups) == 1
        mock_sleep.assert_called_once_with(INITIAL_BACKOFF_SECONDS)

    @patch("dental_scheduler.services.nexhealth_client.time.sleep")
    def test_retries_on_500_error(self, mock_sleep):
        client = NexHealthClient(api_key="k")

        with patch.object(
            client._client,
            "request",
            side_effect=[_mock_response({"error": "oops"}, 500), _mock_response({"data": []})],
        ):
            assert client.search_patients("acme", location_id="1", name="A B", date_of_birth="2000-01-01") == []

    @patch("dental_scheduler.services.nexhealth_client.time.sleep")
    def test_does_not_retry_on_400_error(self, mock_sleep):
        client = NexHealthClient(api_key="k")

        with patch.object(client._client, "request", return_value=_mock_response({"error": "bad"}, 400)):
            with pytest.raises(NexHealthAPIError) as exc_info:
                client.search_patients("acme", location_id="1", name="A B", date_of_birth="2000-01-01")

        assert exc_info.value.status_code == 400
        mock_sleep.assert_not_called()

    @patch("dental_scheduler.services.nexhealth_client.time.sleep")
    def test_raises_after_max_retries(self, mock_sleep):
        client = NexHealthClient(api_key="k")

        with patch.object(
            client._client, "request", side_effect=httpx.TimeoutException("timeout"),
        ) as mock_req:
            with pytest.raises(NexHealthAPIError) as exc_info:
                client.get_appointment_slots(
                    "acme", start_date="2025-07-15", days=1, location_id="4001",
                    provider_ids=["301"], slot_length=30,
                )

        assert "after 3 retries" in str(exc_info.value)
        assert mock_req.call_count == MAX_RETRIES
        assert mock_sleep.call_count == MAX_RETRIES - 1
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    @patch("dental_scheduler.services.nexhealth_client.time.sleep")
    def test_retries_on_dropped_connection(self, mock_sleep):
        client = NexHealthClient(api_key="k")

        with patch.object(
            client._client,
            "request",
            side_effect=[
                httpx.RemoteProtocolError("Server disconnected without sending a response."),
                httpx.ReadError("Connection reset by peer"),
                _mock_response(SLOTS_BODY),
            ],
        ) as mock_req:
            groups = client.get_appointment_slots(
                "acme", start_date="2025-07-15", days=1, location_id="4001",
                provider_ids=["301"], slot_length=30,
            )

        assert len(groups) == 1
        assert mock_req.call_count == 3
        assert mock_sleep.call_count == 2

    @patch("dental_scheduler.services.nexhealth_client.time.sleep")
    def test_dropped_connection_surfaces_as_api_error(self, mock_sleep):
        client = NexHealthClient(api_key="k")

        with patch.object(
            client._client,
            "request",
            side_effect=httpx.RemoteProtocolError("Server disconnected without sending a response."),
        ) as mock_req:
            with pytest.raises(NexHealthAPIError) as exc_info:
                client.search_patients("acme", location_id="1", name="A B", date_of_birth="2000-01-01")

        assert mock_req.call_count == MAX_RETRIES
        assert mock_sleep.call_count == MAX_RETRIES - 1
        assert exc_info.value.status_code is None
        assert isinstance(exc_info.value.__cause__, httpx.RemoteProtocolError)

    @patch("dental_scheduler.services.nexhealth_client.time.sleep")
    def test_non_transport_http_error_is_wrapped_without_retry(self, mock_sleep):
        client = NexHealthClient(api_key="k")

        with patch.object(
            client._client, "request", side_effect=httpx.DecodingError("bad gzip"),
        ) as mock_req:
            with pytest.raises(NexHealthAPIError) as exc_info:
                client.search_patients("acme", location_id="1", name="A B", date_of_birth="2000-01-01")

        assert "DecodingError" in str(exc_info.value)
        assert mock_req.call_count == 1
        mock_sleep.assert_not_called()

    @patch("dental_scheduler.services.nexhealth_client.time.sleep")
    def test_non_json_body_is_wrapped(self, mock_sleep):
        client = NexHealthClient(api_key="k")
        response = _mock_response({})
        response.json.side_effect = ValueError("Expecting value")
        response.text = "<html>maintenance</html>"

        with patch.object(client._client, "request", return_value=response):
            with pytest.raises(NexHealthAPIError) as exc_info:
                client.search_patients("acme", location_id="1", name="A B", date_of_birth="2000-01-01")

        assert exc_info.value.status_code == 200
        assert exc_info.value.body == "<html>maintenance</html>"
        mock_sleep.assert_not_called()


# ── Tests: create_patient ────────────────────────────────────────────


class TestCreatePatient:
    PATIENT = {
        "first_name": "Ada",
        "last_name": "Park",
        "email": "ada@example.com",
        "bio": {"date_of_birth": "1990-04-02", "phone_number": "3135551200"},
    }

    def test_posts_provider_and_patient(self):
        client = NexHealthClient(api_key="k")
        body = {"code": True, "data": {"user": {"id": 4242}}}

        with patch.object(client._client, "request", return_value=_mock_response(body)) as mock_req:
            response = client.create_patient(
                "acme", location_id="4001", provider_id="301", patient=self.PATIENT,
            )

        assert extract_patient_id(response) == "4242"
        assert mock_req.call_args.args == ("POST", "/patients")
        assert mock_req.call_args.kwargs["params"] == {"subdomain": "acme", "location_id": "4001"}
        assert mock_req.call_args.kwargs["json"] == {
            "provider": {"provider_id": 301},
            "patient": self.PATIENT,
        }

    def test_non_numeric_provider_id_is_sent_verbatim(self):
        client = NexHealthClient(api_key="k")

        with patch.object(client._client, "request", return_value=_mock_response({"data": {"id": 1}})) as mock_req:
            client.create_patient("acme", location_id="4001", provider_id="prov-x", patient=self.PATIENT)

        assert mock_req.call_args.kwargs["json"]["provider"] == {"provider_id": "prov-x"}

    @patch("dental_scheduler.services.nexhealth_client.time.sleep")
    def test_never_retried(self, mock_sleep):
        client = NexHealthClient(api_key="k")

        with patch.object(
            client._client, "request", side_effect=httpx.RemoteProtocolError("Server disconnected"),
        ) as mock_req:
            with pytest.raises(NexHealthAPIError):
                client.create_patient("acme", location_id="4001", provider_id="301", patient=self.PATIENT)

        assert mock_req.call_count == 1
        mock_sleep.assert_not_called()


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ({"data": {"id": 12}}, "12"),
        ({"data": {"appointment": {"id": 34}}}, "34"),
        ({"data": {}}, None),
        ({}, None),
    ],
)
def test_extract_appointment_id(body, expected):
    assert extract_appointment_id(body) == expected


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ({"data": {"user": {"id": 55}}}, "55"),
        ({"data": {"id": 56}}, "56"),
        ({"data": {"user": {}}}, None),
        ({"data": None}, None),
        ({}, None),
    ],
)
def test_extract_patient_id(body, expected):
    assert extract_patient_id(body) == expected
