"""Digiforma GraphQL client.

Calls the Digiforma GraphQL endpoint directly over requests (no official
Python SDK). Read-only: nothing is ever written to Digiforma. Every fetch
raises DigiformaAPIError on failure and does not retry; retry policy is the
caller's business.
"""
import logging
import os
from typing import Any, Dict, List, Optional

import requests
from pydantic import BaseModel

from digiforma.exceptions import DigiformaAPIError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://app.digiforma.com/api/v1/graphql"
DEFAULT_TIMEOUT = 30

_CONTACT_FIELDS = """
    id
    firstname
    lastname
    email
    phone
    position
    title
    civility
"""

_COMPANY_FIELDS = f"""
    id
    name
    accountingNumber
    ape
    city
    cityCode
    code
    country
    email
    employeesCount
    note
    roadAddress
    siret
    contacts {{{_CONTACT_FIELDS}}}
"""

_CUSTOMER_FIELDS = """
    id
    accountingNumber
    entity {
      ... on Company {
        id
        name
        email
        accountingNumber
        city
        cityCode
      }
    }
"""

COMPANIES_QUERY = f"query {{ companies {{{_COMPANY_FIELDS}}} }}"

COMPANY_BY_ID_QUERY = f"""
query GetCompany($id: ID!) {{
  company(id: $id) {{{_COMPANY_FIELDS}}}
}}
"""

SEARCH_COMPANIES_QUERY = f"""
query SearchCompanies($filter: CompanyFilter!) {{
  companies(filter: $filter) {{{_COMPANY_FIELDS}}}
}}
"""

TRAINEES_QUERY = """
query {
  trainees {
    id
    firstname
    lastname
    email
    phone
    company { id name }
  }
}
"""

QUOTATIONS_QUERY = f"""
query {{
  quotations {{
    id
    acceptedAt
    date
    insertedAt
    number
    numberStr
    items {{ id name description quantity unitPrice vat }}
    customer {{{_CUSTOMER_FIELDS}}}
  }}
}}
"""

INVOICES_QUERY = f"""
query {{
  invoices {{
    id
    date
    insertedAt
    number
    numberStr
    invoicePayments {{ amount date }}
    items {{ id name description quantity unitPrice vat }}
    customer {{{_CUSTOMER_FIELDS}}}
  }}
}}
"""

PING_QUERY = "query { __typename }"


class ConnectionTestResult(BaseModel):
    success: bool
    message: str


class DigiformaClient:
    """Bearer-token authenticated Digiforma GraphQL client."""

    def __init__(
        self,
        bearer_token: str,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http: Optional[requests.Session] = None,
    ):
        self.api_url = api_url or os.environ.get("DIGIFORMA_API_URL", DEFAULT_API_URL)
        self.timeout = timeout or float(os.environ.get("DIGIFORMA_TIMEOUT", DEFAULT_TIMEOUT))
        self.http = http or requests.Session()
        self.http.headers.update({
            "Authorization": f"Bearer {bearer_token}",
            "Content-Type": "application/json",
        })

    def execute(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """POST one GraphQL operation and return its `data` object."""
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables
        try:
            resp = self.http.post(self.api_url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise DigiformaAPIError(f"Digiforma request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise DigiformaAPIError(
                f"Digiforma returned HTTP {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise DigiformaAPIError(
                "Digiforma returned a non-JSON response", status_code=resp.status_code
            ) from exc
        if not isinstance(body, dict):
            raise DigiformaAPIError("Digiforma returned an unexpected response body")

        errors = body.get("errors") or []
        if errors:
            if not isinstance(errors, list):
                errors = [errors]
            message = "; ".join(
                str(e.get("message", e) if isinstance(e, dict) else e) for e in errors
            )
            raise DigiformaAPIError(f"Digiforma GraphQL error: {message}", errors=errors)
        data = body.get("data") or {}
        if not isinstance(data, dict):
            raise DigiformaAPIError("Digiforma returned an unexpected data payload")
        return data

    def _fetch_list(self, key: str, query: str) -> List[Dict[str, Any]]:
        try:
            data = self.execute(query)
        except DigiformaAPIError as exc:
            logger.error("Failed to fetch Digiforma %s: %s", key, exc)
            raise
        records = data.get(key) or []
        if not isinstance(records, list):
            logger.error("Digiforma %s is not a list: %r", key, type(records).__name__)
            raise DigiformaAPIError(f"Digiforma returned an unexpected {key} payload")
        logger.info("Fetched %d Digiforma %s", len(records), key)
        return records

    def fetch_companies(self) -> List[Dict[str, Any]]:
        return self._fetch_list("companies", COMPANIES_QUERY)

    def fetch_trainees(self) -> List[Dict[str, Any]]:
        return self._fetch_list("trainees", TRAINEES_QUERY)

    def fetch_quotations(self) -> List[Dict[str, Any]]:
        return self._fetch_list("quotations", QUOTATIONS_QUERY)

    def fetch_invoices(self) -> List[Dict[str, Any]]:
        return self._fetch_list("invoices", INVOICES_QUERY)

    def fetch_company_by_id(self, company_id: str) -> Optional[Dict[str, Any]]:
        try:
            data = self.execute(COMPANY_BY_ID_QUERY, {"id": company_id})
        except DigiformaAPIError as exc:
            logger.error("Failed to fetch Digiforma company %s: %s", company_id, exc)
            raise
        return data.get("company") or None

    def _search_companies(self, company_filter: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            data = self.execute(SEARCH_COMPANIES_QUERY, {"filter": company_filter})
        except DigiformaAPIError as exc:
            logger.error("Failed to search Digiforma companies %s: %s", company_filter, exc)
            raise
        companies = data.get("companies") or []
        if not isinstance(companies, list):
            raise DigiformaAPIError("Digiforma returned an unexpected companies payload")
        if not companies:
            logger.info("No Digiforma company found for %s", company_filter)
            return None
        return companies[0]

    def search_company_by_name(self, name: str, city: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """First company whose name (and city, when given) matches the filter."""
        company_filter: Dict[str, Any] = {"name": name}
        if city:
            company_filter["city"] = city
        return self._search_companies(company_filter)

    def search_company_by_accounting_number(self, accounting_number: str) -> Optional[Dict[str, Any]]:
        return self._search_companies({"accountingNumber": accounting_number})

    def test_connection(self) -> ConnectionTestResult:
        """Cheapest possible round-trip. Never raises."""
        try:
            self.execute(PING_QUERY)
        except DigiformaAPIError as exc:
            logger.error("Digiforma connection test failed: %s", exc)
            return ConnectionTestResult(success=False, message=str(exc))
        except Exception as exc:
            logger.exception("Digiforma connection test failed unexpectedly")
            return ConnectionTestResult(success=False, message=f"Unexpected error: {exc}")
        return ConnectionTestResult(success=True, message="Connection successful")
