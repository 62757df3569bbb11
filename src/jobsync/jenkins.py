"""Jenkins implementation of the external system contract.

Managed resources map to Jenkins items: the namespace is a folder and the
resource name is an item inside it. Item configuration is rendered from the
spec payload as ``config.xml``.

SECURITY: Every request carries a timeout so a hung server only stalls the
calling worker for a bounded time.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import Any, Literal
from urllib.parse import quote

import requests
from pydantic import BaseModel, Field, ValidationError

from .external import (
    ExternalAuthError,
    ExternalConflictError,
    ExternalEntity,
    ExternalError,
    ExternalNotFoundError,
    ExternalTransientError,
    InvalidSpecError,
)

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30

FOLDER_CLASS = "com.cloudbees.hudson.plugins.folder.Folder"
PIPELINE_DEFINITION_CLASS = "org.jenkinsci.plugins.workflow.cps.CpsFlowDefinition"

XML_HEADERS = {"Content-Type": "application/xml; charset=utf-8"}


# =============================================================================
# Job configuration
# =============================================================================


class JobSpec(BaseModel):
    """Spec payload understood by the Jenkins client."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    kind: Literal["pipeline", "folder"] = "pipeline"
    description: str = ""
    script: str = ""
    sandbox: bool = True
    disabled: bool = False
    # Raw config.xml wins over every other field when present
    config_xml: str | None = Field(None, alias="configXml")


def parse_job_spec(spec: dict[str, Any]) -> JobSpec:
    """Validate a spec payload.

    Raises:
        InvalidSpecError: If the payload does not describe a job.
    """
    try:
        return JobSpec.model_validate(spec)
    except ValidationError as e:
        raise InvalidSpecError(f"Invalid job spec: {e.errors()}") from e


def render_config_xml(spec: dict[str, Any]) -> str:
    """Render the ``config.xml`` document for a spec payload."""
    job = parse_job_spec(spec)
    if job.config_xml:
        return job.config_xml

    if job.kind == "folder":
        root = ET.Element(FOLDER_CLASS, {"plugin": "cloudbees-folder"})
        ET.SubElement(root, "description").text = job.description
        return _to_xml(root)

    root = ET.Element("flow-definition", {"plugin": "workflow-job"})
    ET.SubElement(root, "description").text = job.description
    ET.SubElement(root, "keepDependencies").text = "false"
    definition = ET.SubElement(
        root, "definition", {"class": PIPELINE_DEFINITION_CLASS, "plugin": "workflow-cps"}
    )
    ET.SubElement(definition, "script").text = job.script
    ET.SubElement(definition, "sandbox").text = "true" if job.sandbox else "false"
    ET.SubElement(root, "disabled").text = "true" if job.disabled else "false"
    return _to_xml(root)


def _to_xml(root: ET.Element) -> str:
    return "<?xml version='1.1' encoding='UTF-8'?>\n" + ET.tostring(root, encoding="unicode")


def _folder_config_xml(description: str = "") -> str:
    return render_config_xml({"kind": "folder", "description": description})


# =============================================================================
# Client
# =============================================================================


def item_path(name: str) -> str:
    """URL path of a (possibly nested) item: ``a/b`` -> ``/job/a/job/b``."""
    segments = [s for s in name.split("/") if s]
    if not segments:
        raise ValueError("Item name cannot be empty")
    return "".join(f"/job/{quote(s, safe='')}" for s in segments)


def _split_parent(name: str) -> tuple[str | None, str]:
    parent, _, leaf = name.rpartition("/")
    return (parent or None), leaf


def classify_response(response: requests.Response, name: str) -> ExternalError:
    """Map a failed response onto the external error taxonomy."""
    status = response.status_code
    body = response.text[:500] if response.text else ""

    if status == 404:
        return ExternalNotFoundError(f"{name} not found", status_code=status)
    if status in (401, 403):
        return ExternalAuthError(
            f"Not authorized to manage {name} (HTTP {status})", status_code=status
        )
    if status == 409 or (status == 400 and "already exists" in body.lower()):
        return ExternalConflictError(
            f"{name} collides with an existing item not managed by this operator",
            status_code=status,
        )
    if status >= 500 or status == 429:
        return ExternalTransientError(
            f"Server error for {name} (HTTP {status})", status_code=status
        )
    return ExternalError(f"Unexpected response for {name} (HTTP {status}): {body}", status)


class JenkinsClient:
    """``requests``-based client for Jenkins items.

    Implements the ExternalSystemClient protocol.
    """

    def __init__(
        self,
        base_url: str,
        user: str | None = None,
        token: str | None = None,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        if user and token:
            self._session.auth = (user, token)
        self._crumb: dict[str, str] | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    def close(self) -> None:
        self._session.close()

    # -------------------------------------------------------------------------
    # ExternalSystemClient
    # -------------------------------------------------------------------------

    def get(self, name: str) -> ExternalEntity | None:
        response = self._request("GET", f"{item_path(name)}/config.xml", name)
        if response.status_code == 404:
            return None
        if not response.ok:
            raise classify_response(response, name)
        return ExternalEntity(name=name, config=response.text)

    def create(self, name: str, spec: dict[str, Any]) -> None:
        config_xml = render_config_xml(spec)
        parent, leaf = _split_parent(name)
        if parent is not None:
            self._ensure_folder(parent)
        prefix = item_path(parent) if parent is not None else ""
        response = self._request(
            "POST",
            f"{prefix}/createItem",
            name,
            params={"name": leaf},
            data=config_xml.encode("utf-8"),
            headers=XML_HEADERS,
        )
        if not response.ok:
            raise classify_response(response, name)
        logger.info("Created Jenkins item", extra={"item": name})

    def update(self, name: str, spec: dict[str, Any]) -> None:
        config_xml = render_config_xml(spec)
        response = self._request(
            "POST",
            f"{item_path(name)}/config.xml",
            name,
            data=config_xml.encode("utf-8"),
            headers=XML_HEADERS,
        )
        if not response.ok:
            raise classify_response(response, name)
        logger.info("Updated Jenkins item", extra={"item": name})

    def delete(self, name: str) -> None:
        response = self._request("POST", f"{item_path(name)}/doDelete", name)
        # doDelete answers with a redirect to the parent on success
        if response.status_code in (200, 302):
            logger.info("Deleted Jenkins item", extra={"item": name})
            return
        raise classify_response(response, name)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _ensure_folder(self, folder: str) -> None:
        """Create each missing folder along ``folder``."""
        segments = folder.split("/")
        for depth in range(1, len(segments) + 1):
            path = "/".join(segments[:depth])
            response = self._request("GET", f"{item_path(path)}/api/json", path)
            if response.ok:
                continue
            if response.status_code != 404:
                raise classify_response(response, path)

            parent, leaf = _split_parent(path)
            prefix = item_path(parent) if parent is not None else ""
            created = self._request(
                "POST",
                f"{prefix}/createItem",
                path,
                params={"name": leaf},
                data=_folder_config_xml().encode("utf-8"),
                headers=XML_HEADERS,
            )
            # Another worker may have created the folder concurrently
            if not created.ok and not (
                created.status_code == 400 and "already exists" in created.text.lower()
            ):
                raise classify_response(created, path)
            logger.info("Created Jenkins folder", extra={"folder": path})

    def _crumb_headers(self) -> dict[str, str]:
        """CSRF crumb for POST requests; empty when the issuer is disabled."""
        if self._crumb is not None:
            return self._crumb
        response = self._request("GET", "/crumbIssuer/api/json", "crumbIssuer", crumb=False)
        if response.ok:
            data = response.json()
            self._crumb = {data["crumbRequestField"]: data["crumb"]}
        elif response.status_code == 404:
            self._crumb = {}
        else:
            raise classify_response(response, "crumbIssuer")
        return self._crumb

    def _request(
        self,
        method: str,
        path: str,
        name: str,
        *,
        params: dict[str, str] | None = None,
        data: bytes | None = None,
        headers: dict[str, str] | None = None,
        crumb: bool = True,
    ) -> requests.Response:
        with_crumb = method != "GET" and crumb
        response = self._send(method, path, name, params, data, headers, with_crumb)

        # Crumbs expire with the session they were issued for; refresh once
        if with_crumb and response.status_code == 403 and self._crumb:
            logger.info("CSRF crumb rejected, fetching a new one", extra={"item": name})
            self._crumb = None
            response = self._send(method, path, name, params, data, headers, with_crumb)
        return response

    def _send(
        self,
        method: str,
        path: str,
        name: str,
        params: dict[str, str] | None,
        data: bytes | None,
        headers: dict[str, str] | None,
        with_crumb: bool,
    ) -> requests.Response:
        all_headers = dict(headers or {})
        if with_crumb:
            all_headers.update(self._crumb_headers())

        try:
            return self._session.request(
                method,
                f"{self._base_url}{path}",
                params=params,
                data=data,
                headers=all_headers,
                timeout=self._timeout,
                allow_redirects=False,
            )
        except requests.Timeout as e:
            raise ExternalTransientError(f"Timed out talking to Jenkins for {name}") from e
        except requests.RequestException as e:
            # Message must stay stable across retries; it ends up in annotations
            logger.debug("Jenkins request failed", extra={"item": name, "error": str(e)})
            raise ExternalTransientError(
                f"Cannot reach Jenkins for {name} ({type(e).__name__})"
            ) from e
