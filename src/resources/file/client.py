"""
File external client and connector.

The client checks, creates and removes one file over the remote channel.
"""

import logging

import ssh
from conditions import available, creating, deleting
from config import SSHConfig
from errors import (
    ConfigLookupError,
    CredentialsError,
    ExecutionError,
    ReconcileError,
    TrackUsageError,
)
from resources.base import (
    BoundClient,
    Connection,
    Connector,
    ExternalClient,
    ExternalCreation,
    ExternalObservation,
    ExternalUpdate,
)
from resources.file.models import File
from resources.providerconfig import ProviderConfig

logger = logging.getLogger(__name__)

ERR_TRACK_USAGE = "cannot track ProviderConfig usage"
ERR_GET_PROVIDER_CONFIG = "cannot get ProviderConfig"
ERR_GET_CREDENTIALS = "cannot get credentials"
ERR_NEW_CLIENT = "cannot create new client"
ERR_CREATE = "cannot create file"
ERR_DELETE = "cannot delete file"

STATUS_AVAILABLE = "Available"


class FileClient(ExternalClient):
    """ExternalClient for File resources."""

    async def observe(self, resource: File, conn: Connection) -> ExternalObservation:
        path = resource.spec.for_provider.file
        try:
            await conn.execute([ssh.list_path(path)])
        except ExecutionError as e:
            # Absent and "could not check" are not told apart here.
            logger.debug(f"File {path} not found for {resource.name}: {e}")
            return ExternalObservation(resource_exists=False)

        resource.set_conditions(available())
        resource.status.at_provider.status = STATUS_AVAILABLE
        # Existence is the only observable property of a File.
        return ExternalObservation(resource_exists=True, resource_up_to_date=True)

    async def create(self, resource: File, conn: Connection) -> ExternalCreation:
        resource.set_conditions(creating())
        try:
            await conn.execute([ssh.touch(resource.spec.for_provider.file)])
        except ExecutionError as e:
            raise e.wrap(ERR_CREATE) from e
        return ExternalCreation()

    async def update(self, resource: File, conn: Connection) -> ExternalUpdate:
        return ExternalUpdate()

    async def delete(self, resource: File, conn: Connection) -> None:
        resource.set_conditions(deleting())
        try:
            await conn.execute([ssh.remove(resource.spec.for_provider.file)])
        except ExecutionError as e:
            raise e.wrap(ERR_DELETE) from e


class FileConnector(Connector):
    """
    Produces a BoundClient for a File by:
    1. Tracking that the File is using a ProviderConfig.
    2. Getting the File's ProviderConfig.
    3. Getting the credentials specified by the ProviderConfig.
    4. Using the credentials to open a connection.
    """

    def __init__(self, store, ssh_config: SSHConfig, dial=ssh.connect):
        self.store = store
        self.ssh_config = ssh_config
        self._dial = dial

    async def connect(self, resource: File) -> BoundClient:
        ref = resource.spec.provider_config_ref.name

        try:
            await self.store.track_provider_config_usage(resource.id, ref)
        except Exception as e:
            raise TrackUsageError(f"{ERR_TRACK_USAGE}: {e}") from e

        try:
            record = await self.store.get_provider_config(ref)
        except Exception as e:
            raise ConfigLookupError(f"{ERR_GET_PROVIDER_CONFIG}: {e}") from e
        if record is None:
            raise ConfigLookupError(
                f"{ERR_GET_PROVIDER_CONFIG}: ProviderConfig {ref} not found"
            )

        try:
            credentials = ProviderConfig.from_record(record).credentials()
        except CredentialsError as e:
            raise e.wrap(ERR_GET_CREDENTIALS) from e

        try:
            conn = await self._dial(
                credentials,
                connect_timeout=self.ssh_config.connect_timeout,
                command_timeout=self.ssh_config.command_timeout,
                known_hosts=self.ssh_config.known_hosts,
            )
        except ReconcileError as e:
            raise e.wrap(ERR_NEW_CLIENT) from e

        return BoundClient(FileClient(), conn)
