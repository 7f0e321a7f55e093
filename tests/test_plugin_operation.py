import pytest

from butler_automation.executors import CommandResult, Executor
from butler_automation.operations.plugin import PluginOperation, installed_plugin_versions
from butler_automation.types import HostConfig

SHA = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


class RecordingExecutor(Executor):
    """Tracks file digests so downloads and renames behave like a real host."""

    def __init__(self, checksums: dict[str, str] | None = None, list_output: str = "", download_digest: str = SHA):
        super().__init__(HostConfig(name="ci1"))
        self.checksums = checksums or {}
        self.list_output = list_output
        self.download_digest = download_digest
        self.commands: list[list[str]] = []

    def _spawn(self, command, *, env, cwd, timeout):  # type: ignore[override]
        self.commands.append(command)
        if command[0] == "sha256sum":
            digest = self.checksums.get(command[1])
            if digest is None:
                return CommandResult(command, "", "No such file", 1)
            return CommandResult(command, f"{digest}  {command[1]}\n", "", 0)
        if command[:2] == ["sh", "-c"]:
            return CommandResult(command, self.list_output, "", 0)
        if command[0] == "curl":
            self.checksums[command[command.index("-o") + 1]] = self.download_digest
        if command[:2] == ["mv", "-f"]:
            self.checksums[command[3]] = self.checksums.pop(command[2])
        return CommandResult(command, "", "", 0)

    def mutations(self) -> list[list[str]]:
        return [command for command in self.commands if command[0] != "sha256sum"]


def plugin_op(**extra) -> PluginOperation:
    spec = {"name": "git", "version": "5.2.1", "plugins_dir": "/var/lib/jenkins/plugins", "owner": "jenkins"}
    spec.update(extra)
    return PluginOperation(spec)


def test_installed_versions_are_parsed():
    executor = RecordingExecutor(list_output="git 5.2.1\nstructs 325.v\nbroken \n")

    versions = installed_plugin_versions(executor, "/var/lib/jenkins/plugins")

    assert versions == {"git": "5.2.1", "structs": "325.v", "broken": None}


def test_check_uses_checksum_when_known():
    executor = RecordingExecutor(checksums={"/var/lib/jenkins/plugins/git.jpi": SHA})
    op = plugin_op(sha256=SHA)

    result = op.apply(HostConfig("ci1"), executor)

    assert result.changed is False
    assert result.resource == "git@5.2.1"
    assert executor.mutations() == []


def test_install_downloads_verifies_and_renames():
    executor = RecordingExecutor()
    op = plugin_op(sha256=SHA, url="https://updates.example.com/git.hpi")

    result = op.apply(HostConfig("ci1"), executor)

    assert result.changed is True
    assert result.details == "installed 5.2.1"
    mutations = executor.mutations()
    assert [command[0] for command in mutations] == ["mkdir", "curl", "chown", "mv", "rm"]
    assert mutations[1][-1] == "https://updates.example.com/git.hpi"
    assert mutations[3][-1] == "/var/lib/jenkins/plugins/git.jpi"
    assert mutations[4] == ["rm", "-rf", "/var/lib/jenkins/plugins/git"]


def test_checksum_mismatch_aborts_install():
    executor = RecordingExecutor(download_digest="0" * 64)
    op = plugin_op(sha256=SHA)

    with pytest.raises(ValueError) as excinfo:
        op.apply(HostConfig("ci1"), executor)

    assert "checksum mismatch" in str(excinfo.value)
    assert not any(command[0] == "mv" for command in executor.commands)
    assert executor.commands[-1][:2] == ["rm", "-f"]


def test_default_url_uses_update_center():
    op = plugin_op()
    assert op.url == "https://updates.jenkins.io/download/plugins/git/5.2.1/git.hpi"


def test_check_falls_back_to_manifest_version():
    executor = RecordingExecutor(list_output="git 5.2.1\n")
    assert plugin_op().check(HostConfig("ci1"), executor) is True
    executor.list_output = "git 5.1.0\n"
    assert plugin_op().check(HostConfig("ci1"), executor) is False
