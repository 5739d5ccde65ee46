"""Endpoint factory: one endpoint instance per URL scheme."""

from typing import Dict, List, Optional, Type
from urllib.parse import urlparse

from ..cache.directory_tree import DirectoryTree
from ..config.settings import AppSettings, get_settings
from ..performance import MetricsCollector, get_metrics_collector
from .base import BaseStorageEndpoint, InvalidUrlError
from .google_drive import GoogleDriveEndpoint
from .local import LocalEndpoint
from .s3 import S3Endpoint


class EndpointFactory:
    """Builds and caches storage endpoints keyed by URL scheme."""

    _endpoint_classes: Dict[str, Type[BaseStorageEndpoint]] = {
        LocalEndpoint.scheme: LocalEndpoint,
        S3Endpoint.scheme: S3Endpoint,
        GoogleDriveEndpoint.scheme: GoogleDriveEndpoint,
    }

    def __init__(
        self,
        directory_tree: DirectoryTree,
        settings: Optional[AppSettings] = None,
        metrics: Optional[MetricsCollector] = None,
        **overrides
    ):
        """Initialize the factory.

        Args:
            directory_tree: Handed to hierarchical backends
            settings: Application settings
            metrics: Shared metrics collector
            **overrides: Per scheme constructor kwargs, e.g. ``s3={"client": stub}``
        """
        self.directory_tree = directory_tree
        self.settings = settings or get_settings()
        self.metrics = metrics or get_metrics_collector()
        self.overrides = overrides
        self._instances: Dict[str, BaseStorageEndpoint] = {}

    def for_url(self, url: str) -> BaseStorageEndpoint:
        """Endpoint responsible for ``url``.

        Raises:
            InvalidUrlError: If no backend handles the URL scheme
        """
        scheme = urlparse(url).scheme
        if scheme not in self._instances:
            self._instances[scheme] = self.create_endpoint(scheme)
        return self._instances[scheme]

    def create_endpoint(self, scheme: str) -> BaseStorageEndpoint:
        if scheme not in self._endpoint_classes:
            raise InvalidUrlError(
                f"Unsupported URL scheme: '{scheme}', expected one of: {self.get_supported_schemes()}"
            )

        endpoint_class = self._endpoint_classes[scheme]
        kwargs = dict(self.overrides.get(scheme, {}))
        kwargs.update(settings=self.settings, metrics=self.metrics)
        if issubclass(endpoint_class, GoogleDriveEndpoint):
            kwargs["directory_tree"] = self.directory_tree

        return endpoint_class(**kwargs)

    async def close(self):
        for endpoint in self._instances.values():
            await endpoint.close()
        self._instances.clear()

    @classmethod
    def get_supported_schemes(cls) -> List[str]:
        return list(cls._endpoint_classes.keys())
