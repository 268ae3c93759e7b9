"""Idempotent GeoServer REST provisioning.

GeoServer organizes published data as workspace -> store -> layer. For
every resource kind the publisher follows one sequence: look the resource
up by name; a successful lookup means it is already provisioned and nothing
else happens; a 404 triggers a single creation call with a fixed XML
descriptor; any other outcome raises PublishError.

The lookup-then-create sequence is not atomic. Two callers provisioning the
same name at once can both see 404 and both try to create. Names are derived
per upload, so concurrent uploads never share a store or layer name; the
shared workspace and datastore are created once and then only looked up.

Example:
    Publish a PostGIS table as a feature type:
        >>> config = GeoServerConfig.from_settings(settings)
        >>> async with GeoServerPublisher(config) as publisher:
        ...     await publisher.ensure_workspace("spectra")
        ...     await publisher.ensure_datastore(
        ...         "spectra", "postgis", connection
        ...     )
        ...     await publisher.ensure_feature_type(
        ...         "spectra", "postgis", "layer_ab12", "layer_ab12"
        ...     )
"""

from __future__ import annotations

import dataclasses
import pathlib
import urllib.parse
import xml.etree.ElementTree as ET
from typing import TYPE_CHECKING, Literal, Self

import httpx
from loguru import logger

from geoingest.core import errors

if TYPE_CHECKING:
    import types

    from geoingest.core import config

REQUEST_TIMEOUT_SECONDS = 30.0

LayerKind = Literal["featuretype", "coverage"]

# Fixed tuning for the PostGIS datastore; not caller-configurable.
DATASTORE_TUNING: dict[str, str] = {
    "Evictor run periodicity": "300",
    "Max open prepared statements": "50",
    "encode functions": "false",
    "Support on the fly geometry simplification": "true",
    "create database": "false",
    "preparedStatements": "false",
    "Loose bbox": "true",
    "Expose primary keys": "true",
    "validate connections": "true",
    "Connection timeout": "20",
    "min connections": "1",
    "max connections": "10",
}


@dataclasses.dataclass(frozen=True)
class GeoServerConfig:
    """Connection settings for the GeoServer REST API.

    Built once from application settings and passed to the publisher.
    """

    base_url: str
    username: str
    password: str
    workspace: str
    datastore: str
    public_url: str

    @classmethod
    def from_settings(cls, settings: config.Settings) -> GeoServerConfig:
        base_url = str(settings.geoserver_url).rstrip("/")
        public_url = str(settings.geoserver_public_url or base_url)
        return cls(
            base_url=base_url,
            username=settings.geoserver_user,
            password=settings.geoserver_password,
            workspace=settings.geoserver_workspace,
            datastore=settings.geoserver_datastore,
            public_url=public_url.rstrip("/"),
        )

    def wms_layer_url(self, workspace: str, layer: str) -> str:
        """Return the public WMS GetMap URL for a published layer."""
        query = urllib.parse.urlencode(
            {
                "service": "WMS",
                "version": "1.1.0",
                "request": "GetMap",
                "layers": f"{workspace}:{layer}",
                "styles": "",
                "format": "image/png",
            },
            safe=":/",
        )
        return f"{self.public_url}/{workspace}/wms?{query}"


@dataclasses.dataclass(frozen=True)
class PostGISConnection:
    """Connection parameters GeoServer uses to reach the spatial store."""

    host: str
    port: int
    database: str
    user: str
    password: str
    schema: str = "public"

    @classmethod
    def from_settings(cls, settings: config.Settings) -> PostGISConnection:
        params = settings.database_params()
        return cls(
            host=settings.datastore_host or params.get("host", "localhost"),
            port=int(params.get("port", 5432)),
            database=params.get("dbname", ""),
            user=params.get("user", ""),
            password=params.get("password", ""),
            schema=settings.db_schema,
        )


def _to_xml(root: ET.Element) -> str:
    return ET.tostring(root, encoding="unicode")


def _element(tag: str, text: str | None = None, **attrib: str) -> ET.Element:
    element = ET.Element(tag, attrib)
    if text is not None:
        element.text = text
    return element


def _with_children(parent: ET.Element, *children: ET.Element) -> ET.Element:
    parent.extend(children)
    return parent


def workspace_document(name: str) -> str:
    return _to_xml(_with_children(_element("workspace"), _element("name", name)))


def datastore_document(name: str, connection: PostGISConnection) -> str:
    entries = {
        "host": connection.host,
        "port": str(connection.port),
        "database": connection.database,
        "schema": connection.schema,
        "user": connection.user,
        "passwd": connection.password,
        "dbtype": "postgis",
        **DATASTORE_TUNING,
    }
    parameters = _with_children(
        _element("connectionParameters"),
        *(_element("entry", value, key=key) for key, value in entries.items()),
    )
    return _to_xml(
        _with_children(
            _element("dataStore"),
            _element("name", name),
            _element("type", "PostGIS"),
            _element("enabled", "true"),
            parameters,
        )
    )


def feature_type_document(name: str, native_name: str, store: str) -> str:
    return _to_xml(
        _with_children(
            _element("featureType"),
            _element("name", name),
            _element("nativeName", native_name),
            _element("enabled", "true"),
            _with_children(
                _element("store", **{"class": "dataStore"}),
                _element("name", store),
            ),
        )
    )


def coverage_store_document(name: str, workspace: str, file_path: str) -> str:
    return _to_xml(
        _with_children(
            _element("coverageStore"),
            _element("name", name),
            _element("type", "GeoTIFF"),
            _element("enabled", "true"),
            _with_children(_element("workspace"), _element("name", workspace)),
            _element("url", f"file:{file_path}"),
        )
    )


def coverage_document(name: str, store: str) -> str:
    return _to_xml(
        _with_children(
            _element("coverage"),
            _element("name", name),
            _element("nativeName", name),
            _element("enabled", "true"),
            _with_children(
                _element("store", **{"class": "coverageStore"}),
                _element("name", store),
            ),
        )
    )


def _quote(name: str) -> str:
    return urllib.parse.quote(name, safe="")


class GeoServerPublisher:
    """Async client provisioning GeoServer resources idempotently.

    Use as an async context manager; the underlying httpx client is opened
    on enter and closed on exit. Every ``ensure_*`` method returns True when
    it created the resource and False when it already existed.

    Args:
        config: GeoServer connection settings.
        transport: Optional httpx transport, used by tests to stand in for
            a live GeoServer.
    """

    def __init__(
        self,
        config: GeoServerConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> Self:
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            auth=(self.config.username, self.config.password),
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=self._transport,
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: types.TracebackType | None,
    ) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GeoServerPublisher used outside async with")
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        content: str | None = None,
    ) -> httpx.Response:
        headers = {"Content-Type": "application/xml"} if content else None
        try:
            return await self.client.request(
                method,
                path,
                content=content,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise errors.PublishError(
                f"GeoServer {method} {path} failed: {exc}"
            ) from exc

    async def _ensure(
        self,
        label: str,
        resource_path: str,
        collection_path: str,
        document: str,
    ) -> bool:
        """Look up ``resource_path``; create it under ``collection_path``.

        Args:
            label: Resource description for logs and errors.
            resource_path: REST path of the resource, without suffix.
            collection_path: REST path the creation document is posted to.
            document: XML descriptor of the resource.

        Returns:
            True if the resource was created, False if it already existed.

        Raises:
            PublishError: On transport errors or unexpected statuses.
        """
        lookup = await self._request("GET", f"{resource_path}.json")
        if lookup.is_success:
            logger.info(f"{label} already exists")
            return False
        if lookup.status_code != httpx.codes.NOT_FOUND:
            raise errors.PublishError(
                f"Lookup of {label} returned HTTP {lookup.status_code}: "
                f"{lookup.text[:200]}"
            )

        created = await self._request("POST", collection_path, content=document)
        if not created.is_success:
            logger.error(
                f"Failed to create {label}: HTTP {created.status_code} "
                f"{created.text[:200]}"
            )
            raise errors.PublishError(
                f"Creating {label} returned HTTP {created.status_code}: "
                f"{created.text[:200]}"
            )
        logger.info(f"Created {label}")
        return True

    async def ensure_workspace(self, workspace: str) -> bool:
        """Provision a workspace."""
        return await self._ensure(
            f"workspace {workspace}",
            f"/rest/workspaces/{_quote(workspace)}",
            "/rest/workspaces",
            workspace_document(workspace),
        )

    async def ensure_datastore(
        self,
        workspace: str,
        name: str,
        connection: PostGISConnection,
    ) -> bool:
        """Provision a PostGIS datastore with the fixed tuning defaults."""
        base = f"/rest/workspaces/{_quote(workspace)}/datastores"
        return await self._ensure(
            f"datastore {workspace}:{name}",
            f"{base}/{_quote(name)}",
            base,
            datastore_document(name, connection),
        )

    async def ensure_feature_type(
        self,
        workspace: str,
        store: str,
        name: str,
        native_name: str,
    ) -> bool:
        """Publish the table ``native_name`` as feature type ``name``."""
        base = (
            f"/rest/workspaces/{_quote(workspace)}"
            f"/datastores/{_quote(store)}/featuretypes"
        )
        return await self._ensure(
            f"feature type {workspace}:{name}",
            f"{base}/{_quote(name)}",
            base,
            feature_type_document(name, native_name, store),
        )

    async def ensure_coverage_store(
        self,
        workspace: str,
        name: str,
        file_path: str | pathlib.Path,
    ) -> bool:
        """Provision a GeoTIFF coverage store pointing at ``file_path``."""
        base = f"/rest/workspaces/{_quote(workspace)}/coveragestores"
        return await self._ensure(
            f"coverage store {workspace}:{name}",
            f"{base}/{_quote(name)}",
            base,
            coverage_store_document(name, workspace, str(file_path)),
        )

    async def ensure_coverage(
        self,
        workspace: str,
        store: str,
        name: str,
    ) -> bool:
        """Publish coverage ``name`` from coverage store ``store``."""
        base = (
            f"/rest/workspaces/{_quote(workspace)}"
            f"/coveragestores/{_quote(store)}/coverages"
        )
        return await self._ensure(
            f"coverage {workspace}:{name}",
            f"{base}/{_quote(name)}",
            base,
            coverage_document(name, store),
        )

    async def delete_layer(
        self,
        workspace: str,
        store: str,
        name: str,
        kind: LayerKind,
    ) -> bool:
        """Recursively delete a feature type or coverage.

        Best effort: failures are logged, never raised.

        Returns:
            True if GeoServer confirmed the deletion.
        """
        collection = "datastores" if kind == "featuretype" else "coveragestores"
        path = (
            f"/rest/workspaces/{_quote(workspace)}/{collection}/{_quote(store)}"
            f"/{kind}s/{_quote(name)}"
        )
        try:
            response = await self.client.delete(
                path,
                params={"recurse": "true"},
            )
        except httpx.HTTPError as exc:
            logger.warning(f"Could not delete {kind} {name}: {exc}")
            return False
        if not response.is_success:
            logger.warning(
                f"Could not delete {kind} {name}: HTTP {response.status_code}"
            )
            return False
        logger.info(f"Deleted {kind} {workspace}:{name}")
        return True
