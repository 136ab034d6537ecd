"""Credential stores backed by the local filesystem."""

import logging
import re
from pathlib import Path

from ..core.errors import CredentialNotFound
from ..core.interfaces import Credential, CredentialStore

logger = logging.getLogger(__name__)

_VALID_REF = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')


class FileCredentialStore(CredentialStore):
    """Resolves a reference to a directory ``<root>/<ref>``.

    The directory (typically holding a docker ``config.json``) is what gets
    mounted into the agent. Its contents are never read here.
    """

    def __init__(self, root: str):
        self.root = Path(root)

    def resolve(self, ref: str) -> Credential:
        if not _VALID_REF.match(ref or ""):
            raise CredentialNotFound(ref)
        path = self.root / ref
        if not path.is_dir():
            raise CredentialNotFound(ref)
        logger.debug(f"Resolved credential {ref}")
        return Credential(ref=ref, mount_path=str(path.resolve()))
