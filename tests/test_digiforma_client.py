"""Unit tests for the Digiforma GraphQL client — HTTP is mocked."""
from unittest.mock import MagicMock

import pytest
import requests

from digiforma.client import COMPANIES_QUERY, DigiformaClient
from digiforma.exceptions import DigiformaAPIError


def _response(status_code=200, body=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    resp.json.return_value = body
    return resp


def _client(resp=None, side_effect=None):
    http = MagicMock()
    http.headers = {}
    if side_effect is not None:
        http.post.side_effect = side_effect
    else:
        http.post.return_value = resp
    return DigiformaClient("test-token", api_url="https://digiforma.test/graphql", timeout=5, http=http), http


class TestDigiformaClientExecute:
    def test_sets_bearer_header(self):
        client, http = _client(_response(body={"data": {}}))
        assert http.headers["Authorization"] == "Bearer test-token"
        assert client.api_url == "https://digiforma.test/graphql"

    def test_fetch_companies_returns_records(self):
        client, http = _client(_response(body={"data": {"companies": [{"id": "1"}, {"id": "2"}]}}))

        records = client.fetch_companies()

        assert [r["id"] for r in records] == ["1", "2"]
        http.post.assert_called_once()
        call_kwargs = http.post.call_args
        assert call_kwargs.args[0] == "https://digiforma.test/graphql"
        assert call_kwargs.kwargs["json"] == {"query": COMPANIES_QUERY}
        assert call_kwargs.kwargs["timeout"] == 5

    def test_missing_list_is_empty(self):
        client, _http = _client(_response(body={"data": {"invoices": None}}))
        assert client.fetch_invoices() == []

    def test_graphql_errors_raise(self):
        client, _http = _client(_response(body={"errors": [{"message": "Unauthorized"}]}))

        with pytest.raises(DigiformaAPIError) as excinfo:
            client.fetch_trainees()

        assert "Unauthorized" in str(excinfo.value)
        assert excinfo.value.errors == [{"message": "Unauthorized"}]

    def test_http_error_raises_with_status(self):
        client, _http = _client(_response(status_code=401, text="invalid token"))

        with pytest.raises(DigiformaAPIError) as excinfo:
            client.fetch_quotations()

        assert excinfo.value.status_code == 401

    def test_network_error_raises(self):
        client, _http = _client(side_effect=requests.ConnectionError("connection refused"))

        with pytest.raises(DigiformaAPIError):
            client.fetch_companies()

    def test_non_json_body_raises(self):
        resp = _response()
        resp.json.side_effect = ValueError("no JSON")
        client, _http = _client(resp)

        with pytest.raises(DigiformaAPIError):
            client.fetch_companies()


    def test_string_graphql_errors_raise_api_error(self):
        client, _http = _client(_response(body={"errors": ["Unauthorized"]}))

        with pytest.raises(DigiformaAPIError) as excinfo:
            client.fetch_companies()

        assert "Unauthorized" in str(excinfo.value)

    def test_non_object_data_raises_api_error(self):
        client, _http = _client(_response(body={"data": ["weird"]}))

        with pytest.raises(DigiformaAPIError):
            client.fetch_companies()

    def test_non_list_records_raise_api_error(self):
        client, _http = _client(_response(body={"data": {"companies": {"id": "1"}}}))

        with pytest.raises(DigiformaAPIError):
            client.fetch_companies()


class TestDigiformaClientLookups:
    def test_search_by_name_sends_city_filter(self):
        client, http = _client(_response(body={"data": {"companies": [{"id": "7", "name": "Clinique Beaulieu"}]}}))

        company = client.search_company_by_name("Clinique Beaulieu", city="Paris")

        assert company["id"] == "7"
        variables = http.post.call_args.kwargs["json"]["variables"]
        assert variables == {"filter": {"name": "Clinique Beaulieu", "city": "Paris"}}

    def test_search_without_result_returns_none(self):
        client, _http = _client(_response(body={"data": {"companies": []}}))
        assert client.search_company_by_accounting_number("411XYZ") is None

    def test_fetch_company_by_id(self):
        client, http = _client(_response(body={"data": {"company": {"id": "7"}}}))
        assert client.fetch_company_by_id("7") == {"id": "7"}
        assert http.post.call_args.kwargs["json"]["variables"] == {"id": "7"}


class TestDigiformaClientConnection:
    def test_connection_success(self):
        client, _http = _client(_response(body={"data": {"__typename": "RootQueryType"}}))
        result = client.test_connection()
        assert result.success is True

    def test_connection_failure_never_raises(self):
        client, _http = _client(_response(status_code=500, text="boom"))
        result = client.test_connection()
        assert result.success is False
        assert "500" in result.message

    def test_connection_with_string_errors_reports_failure(self):
        client, _http = _client(_response(body={"errors": ["Unauthorized"]}))
        result = client.test_connection()
        assert result.success is False
        assert "Unauthorized" in result.message

    def test_connection_unexpected_exception_reports_failure(self):
        client, _http = _client(side_effect=KeyError("boom"))
        result = client.test_connection()
        assert result.success is False
        assert "boom" in result.message
