from __future__ import annotations

from video_ingest.constants import ProviderKind
from video_ingest.core.settings import Settings
from video_ingest.providers.base import VideoProvider
from video_ingest.providers.managed_stream import ManagedStreamProvider
from video_ingest.providers.object_store import ObjectStoreProvider


class ProviderRegistry:
    """
    Lazily builds one adapter per provider kind.

    Records keep the provider they were uploaded with, so a deployment that
    has moved to managed streaming still needs the object-store adapter for
    legacy lessons.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._providers: dict[ProviderKind, VideoProvider] = {}

    @property
    def default_kind(self) -> ProviderKind:
        return ProviderKind(self._settings.provider_kind)

    def default(self) -> VideoProvider:
        return self.get(self.default_kind)

    def get(self, kind: ProviderKind | str) -> VideoProvider:
        kind = ProviderKind(kind)
        provider = self._providers.get(kind)
        if provider is None:
            provider = build_provider(self._settings, kind)
            self._providers[kind] = provider
        return provider

    def register(self, provider: VideoProvider) -> None:
        self._providers[provider.kind] = provider

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
        self._providers.clear()


def build_provider(settings: Settings, kind: ProviderKind | str | None = None) -> VideoProvider:
    kind = ProviderKind(kind or settings.provider_kind)
    if kind is ProviderKind.MANAGED_STREAM:
        return ManagedStreamProvider(settings)
    return ObjectStoreProvider(settings)
