from typing import Any, Dict, Iterator


class SourceRegistry:
    """
    Authentication sources by id. CAS sources and directory sources share
    one namespace, the way authsources are configured side by side.
    """

    def __init__(self):
        self._sources: Dict[str, Any] = {}

    def register(self, auth_id: str, source: Any) -> None:
        self._sources[auth_id] = source

    def get(self, auth_id: str) -> Any:
        """Returns None for unknown ids."""
        return self._sources.get(auth_id)

    def __contains__(self, auth_id: str) -> bool:
        return auth_id in self._sources

    def __iter__(self) -> Iterator[str]:
        return iter(self._sources)
