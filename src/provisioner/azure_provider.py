"""Azure Resource Manager provider.

Resource kinds name an ARM resource type and API version:

```yaml
- name: ProxyVnet
  kind: Microsoft.Network/virtualNetworks@2023-09-01
  attributes:
    resourceGroup: rg-proxy
    name: vnet-proxy
    location: westeurope
    properties:
      addressSpace: {addressPrefixes: ["10.0.0.0/16"]}
```

`resourceGroup` and `name` build the resource id; `location`, `tags`,
`kind`, `managedBy` and `properties` form the request body. The response
(minus the id) becomes the recorded outputs, so dependents can reference
computed values such as `${ProxyIp.properties.ipAddress}`.

Long-running operations are awaited with LROPoller.result() inside the
calling worker thread; the Executor bounds the call with its own timeout.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any, TypeVar

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource

from .provider import PermanentProviderError, Provider, ProviderResult, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Throttling, conflicting operation in progress, and server-side failures
TRANSIENT_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})

KIND_PATTERN = re.compile(
    r"^(?P<type>[A-Za-z][A-Za-z0-9.]*/[A-Za-z0-9/]+)@(?P<api_version>\d{4}-\d{2}-\d{2}(-preview)?)$"
)
VALID_RESOURCE_GROUP_PATTERN = r"^[-\w._()]{1,90}$"
VALID_RESOURCE_NAME_PATTERN = r"^[^<>%&:\\?/#*$^]{1,260}$"

# Top-level attributes copied into the ARM request body
BODY_ATTRIBUTES = {
    "location": "location",
    "tags": "tags",
    "kind": "kind",
    "managedBy": "managed_by",
    "properties": "properties",
}


def parse_kind(kind: str) -> tuple[str, str]:
    """Split "Microsoft.X/type@api-version" into (resource type, api version).

    Raises:
        PermanentProviderError: If the kind does not follow that form.
    """
    match = KIND_PATTERN.match(kind)
    if match is None:
        raise PermanentProviderError(
            f"Kind must look like 'Microsoft.Namespace/type@YYYY-MM-DD': '{kind}'",
            code="InvalidKind",
        )
    return match.group("type"), match.group("api_version")


def translate_error(error: AzureError) -> TransientProviderError | PermanentProviderError:
    """Map an Azure SDK error onto the provider error hierarchy."""
    if isinstance(error, HttpResponseError):
        status = error.status_code
        code = getattr(error.error, "code", None) if error.error is not None else None
        code = code or (str(status) if status is not None else None)
        if status in TRANSIENT_STATUS_CODES:
            return TransientProviderError(error.message or str(error), code=code)
        return PermanentProviderError(error.message or str(error), code=code)
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return TransientProviderError(f"Connection error: {error}", code="ConnectionError")
    return PermanentProviderError(str(error), code=type(error).__name__)


class AzureResourceProvider(Provider):
    """Provider backed by the ARM generic resources API."""

    name = "azure"

    def __init__(
        self,
        subscription_id: str,
        credential: TokenCredential | None = None,
        client: ResourceManagementClient | None = None,
    ) -> None:
        if client is None:
            if credential is None:
                raise ValueError("Either credential or client is required")
            client = ResourceManagementClient(credential=credential, subscription_id=subscription_id)
        self._subscription_id = subscription_id
        self._client = client

    def _resource_id(self, resource_type: str, attributes: dict[str, Any]) -> str:
        resource_group = attributes.get("resourceGroup")
        name = attributes.get("name")
        if not isinstance(resource_group, str) or not re.match(
            VALID_RESOURCE_GROUP_PATTERN, resource_group
        ):
            raise PermanentProviderError(
                f"Attribute 'resourceGroup' is missing or invalid: {resource_group!r}",
                code="InvalidResourceGroup",
            )
        if not isinstance(name, str) or not re.match(VALID_RESOURCE_NAME_PATTERN, name):
            raise PermanentProviderError(
                f"Attribute 'name' is missing or invalid: {name!r}", code="InvalidName"
            )
        return (
            f"/subscriptions/{self._subscription_id}/resourceGroups/{resource_group}"
            f"/providers/{resource_type}/{name}"
        )

    def _body(self, attributes: dict[str, Any]) -> GenericResource:
        fields = {
            model_field: attributes[attribute]
            for attribute, model_field in BODY_ATTRIBUTES.items()
            if attributes.get(attribute) is not None
        }
        return GenericResource(**fields)

    def _outputs(self, resource: GenericResource | None) -> dict[str, Any]:
        if resource is None:
            return {}
        data = resource.as_dict()
        data.pop("id", None)
        return data

    def _call(self, operation: str, physical_id: str, func: Callable[[], T]) -> T:
        try:
            return func()
        except AzureError as e:
            error = translate_error(e)
            logger.warning(
                "ARM request failed",
                extra={
                    "operation": operation,
                    "physical_id": physical_id,
                    "code": error.code,
                    "transient": error.transient,
                },
            )
            raise error from e

    def create(self, kind: str, attributes: dict[str, Any]) -> ProviderResult:
        resource_type, api_version = parse_kind(kind)
        resource_id = self._resource_id(resource_type, attributes)
        body = self._body(attributes)
        result = self._call(
            "create",
            resource_id,
            lambda: self._client.resources.begin_create_or_update_by_id(
                resource_id, api_version, body
            ).result(),
        )
        physical_id = getattr(result, "id", None) or resource_id
        logger.info("ARM resource created", extra={"kind": kind, "physical_id": physical_id})
        return ProviderResult(physical_id=physical_id, outputs=self._outputs(result))

    def update(self, kind: str, physical_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        _, api_version = parse_kind(kind)
        body = self._body(attributes)
        result = self._call(
            "update",
            physical_id,
            lambda: self._client.resources.begin_create_or_update_by_id(
                physical_id, api_version, body
            ).result(),
        )
        logger.info("ARM resource updated", extra={"kind": kind, "physical_id": physical_id})
        return self._outputs(result)

    def delete(self, kind: str, physical_id: str) -> None:
        _, api_version = parse_kind(kind)
        try:
            self._call(
                "delete",
                physical_id,
                lambda: self._client.resources.begin_delete_by_id(physical_id, api_version).result(),
            )
        except PermanentProviderError as e:
            if not isinstance(e.__cause__, ResourceNotFoundError):
                raise
            logger.info("ARM resource already absent", extra={"physical_id": physical_id})
            return
        logger.info("ARM resource deleted", extra={"kind": kind, "physical_id": physical_id})
