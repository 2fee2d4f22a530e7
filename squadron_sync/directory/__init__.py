"""
Directory service backends.

Backends are selected by the 'backend' key of the directory configuration.
"""

from typing import Any, Dict, Optional

from squadron_sync.clock import Clock
from .base import DirectoryClientBase, DirectoryAPIError, DirectoryAuthenticationError
from .workspace import WorkspaceDirectoryClient

BACKENDS = {
    'workspace': WorkspaceDirectoryClient,
}


def create_directory_client(config: Dict[str, Any], clock: Optional[Clock] = None) -> DirectoryClientBase:
    """
    Build the configured directory client.

    Raises:
        DirectoryAPIError: If the backend name is unknown
    """
    backend = config.get('backend', 'workspace')
    client_class = BACKENDS.get(backend)
    if client_class is None:
        raise DirectoryAPIError(f"Unknown directory backend: {backend}")
    return client_class(config, clock=clock)
