"""Unit tests for resources/file - File client and connector."""

import pytest

from config import SSHConfig
from errors import (
    AuthenticationError,
    ConfigLookupError,
    CredentialsError,
    DialError,
    ExecutionError,
    TrackUsageError,
)
from resources.base import BoundClient, ObservationState
from resources.file import File, FileClient, FileConnector

from fakes import FakeConnection, FakeDialer, FakeRemote, InMemoryStore, unreachable


@pytest.fixture
def file(sample_resource):
    return File.model_validate(sample_resource)


@pytest.mark.asyncio
class TestFileClient:
    async def test_observe_present(self, file):
        remote = FakeRemote(files={"/tmp/a"})

        observation = await FileClient().observe(file, FakeConnection(remote))

        assert observation.state is ObservationState.CONVERGED
        assert file.get_condition("Ready").reason == "Available"
        assert file.status.at_provider.status == "Available"
        assert remote.executed == ["ls -d -- /tmp/a"]

    async def test_observe_absent(self, file):
        observation = await FileClient().observe(file, FakeConnection(FakeRemote()))

        assert observation.resource_exists is False
        assert observation.state is ObservationState.ABSENT
        assert file.get_condition("Ready") is None

    async def test_observe_failure_reads_as_absent(self, file):
        remote = FakeRemote(files={"/tmp/a"})
        remote.fail_programs.add("ls")

        observation = await FileClient().observe(file, FakeConnection(remote))

        assert observation.resource_exists is False

    async def test_create(self, file):
        remote = FakeRemote()

        await FileClient().create(file, FakeConnection(remote))

        assert remote.files == {"/tmp/a"}
        assert remote.executed == ["touch -- /tmp/a"]
        assert file.get_condition("Ready").reason == "Creating"

    async def test_create_failure(self, file):
        remote = FakeRemote()
        remote.fail_programs.add("touch")

        with pytest.raises(ExecutionError, match="^cannot create file: ") as exc_info:
            await FileClient().create(file, FakeConnection(remote))

        assert exc_info.value.output == b"permission denied\r\n"

    async def test_update_is_a_noop(self, file):
        remote = FakeRemote(files={"/tmp/a"})

        await FileClient().update(file, FakeConnection(remote))

        assert remote.executed == []

    async def test_delete(self, file):
        remote = FakeRemote(files={"/tmp/a", "/tmp/b"})

        await FileClient().delete(file, FakeConnection(remote))

        assert remote.files == {"/tmp/b"}
        assert remote.executed == ["rm -f -- /tmp/a"]
        assert file.get_condition("Ready").reason == "Deleting"

    async def test_delete_absent_succeeds(self, file):
        await FileClient().delete(file, FakeConnection(FakeRemote()))

    async def test_delete_failure(self, file):
        remote = FakeRemote(files={"/tmp/a"})
        remote.fail_programs.add("rm")

        with pytest.raises(ExecutionError, match="^cannot delete file: "):
            await FileClient().delete(file, FakeConnection(remote))

    async def test_path_is_quoted(self, sample_resource):
        sample_resource["spec"]["forProvider"]["file"] = "/tmp/my file"
        remote = FakeRemote()

        await FileClient().create(File.model_validate(sample_resource), FakeConnection(remote))

        assert remote.executed == ["touch -- '/tmp/my file'"]


@pytest.mark.asyncio
class TestFileConnector:
    @pytest.fixture
    def store(self):
        store = InMemoryStore()
        store.add_provider_config("default")
        return store

    async def test_connect(self, store, file):
        dialer = FakeDialer(FakeRemote())
        connector = FileConnector(store, SSHConfig(connect_timeout=3), dial=dialer)

        client = await connector.connect(file)

        assert isinstance(client, BoundClient)
        assert isinstance(client.client, FileClient)
        assert store.usages == {1: "default"}
        credentials, kwargs = dialer.calls[0]
        assert credentials.address == "10.0.0.5"
        assert credentials.password == "hunter2"
        assert kwargs == {
            "connect_timeout": 3,
            "command_timeout": 60,
            "known_hosts": None,
        }

    async def test_bound_client_closes_connection(self, store, file):
        dialer = FakeDialer(FakeRemote())
        client = await FileConnector(store, SSHConfig(), dial=dialer).connect(file)

        async with client:
            await client.observe(file)

        assert dialer.connections[0].closed is True

    async def test_track_usage_failure(self, store, file):
        store.track_error = ConnectionError("connection reset")
        dialer = FakeDialer(FakeRemote())

        with pytest.raises(TrackUsageError, match="^cannot track ProviderConfig usage"):
            await FileConnector(store, SSHConfig(), dial=dialer).connect(file)

        assert dialer.calls == []

    async def test_missing_provider_config(self, store, file):
        del store.provider_configs["default"]
        dialer = FakeDialer(FakeRemote())

        with pytest.raises(
            ConfigLookupError,
            match="^cannot get ProviderConfig: ProviderConfig default not found",
        ):
            await FileConnector(store, SSHConfig(), dial=dialer).connect(file)

        assert store.usages == {}
        assert dialer.calls == []

    async def test_missing_credentials(self, store, file):
        store.provider_configs["default"]["password"] = None

        with pytest.raises(CredentialsError, match="^cannot get credentials: "):
            await FileConnector(store, SSHConfig(), dial=FakeDialer(FakeRemote())).connect(
                file
            )

    async def test_unreachable_host(self, store, file):
        dialer = FakeDialer(FakeRemote(), error=unreachable())

        with pytest.raises(DialError, match="^cannot create new client: cannot connect"):
            await FileConnector(store, SSHConfig(), dial=dialer).connect(file)

    async def test_rejected_credentials(self, store, file):
        dialer = FakeDialer(FakeRemote(), error=AuthenticationError("rejected"))

        with pytest.raises(AuthenticationError) as exc_info:
            await FileConnector(store, SSHConfig(), dial=dialer).connect(file)

        assert exc_info.value.reason == "ConfigError"
