"""SFTP uploader for declarations (fallback submission channel)."""
import asyncio
import logging
import posixpath
import time
from typing import Any, Callable, Dict

import asyncssh

from ..models.customs import DeliveryResult, SubmissionMethod
from ..models.errors import ChannelError
from ..utils.config import Settings

logger = logging.getLogger(__name__)

CHANNEL = "SFTP"


class SftpUploader:
    """
    Uploads a rendered declaration to the customs SFTP drop directory.

    One call opens one SSH connection, uploads one file and always closes
    the connection before returning or raising.
    """

    def __init__(self, settings: Settings, connect: Callable[..., Any] = asyncssh.connect):
        self.host = settings.SFTP_HOST
        self.port = settings.SFTP_PORT
        self.username = settings.SFTP_USERNAME
        self.password = settings.SFTP_PASSWORD
        self.private_key_path = settings.SFTP_PRIVATE_KEY_PATH
        self.remote_dir = settings.SFTP_REMOTE_PATH
        self.known_hosts = settings.SFTP_KNOWN_HOSTS
        self.timeout = settings.SFTP_TIMEOUT
        self._connect = connect

    def _connect_options(self) -> Dict[str, Any]:
        if not self.username or (not self.password and not self.private_key_path):
            raise ChannelError(CHANNEL, "SFTP credentials are not configured")

        options: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "known_hosts": self.known_hosts,
        }
        if self.private_key_path:
            options["client_keys"] = [self.private_key_path]
        else:
            options["password"] = self.password.get_secret_value()
        return options

    def remote_path_for(self, invoice_id: int, timestamp_ms: int) -> str:
        return posixpath.join(self.remote_dir, f"invoice_{invoice_id}_{timestamp_ms}.xml")

    async def upload(self, declaration_path: str, invoice_id: int) -> DeliveryResult:
        options = self._connect_options()
        timestamp = int(time.time() * 1000)
        remote_path = self.remote_path_for(invoice_id, timestamp)

        conn = None
        try:
            conn = await asyncio.wait_for(self._connect(**options), timeout=self.timeout)
            async with conn.start_sftp_client() as sftp:
                await asyncio.wait_for(sftp.put(declaration_path, remote_path), timeout=self.timeout)
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            raise ChannelError(CHANNEL, str(e) or type(e).__name__) from e
        finally:
            if conn is not None:
                await self._close(conn)

        logger.info("Declaration uploaded via SFTP invoice_id=%s remote_path=%s", invoice_id, remote_path)
        return DeliveryResult(
            method=SubmissionMethod.SFTP,
            response={"remotePath": remote_path, "timestamp": timestamp},
            message="Document submitted via SFTP successfully",
        )

    async def _close(self, conn) -> None:
        try:
            conn.close()
            await conn.wait_closed()
        except (asyncssh.Error, OSError) as e:
            logger.warning("Error closing SFTP connection: %s", e)
