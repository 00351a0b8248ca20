"""Tests for ReplicationManager against a real bare repository in tmp_path."""

import subprocess

import pytest

from worldsync.core.errors import RemoteUnavailableError, ReplicationError, WorkingCopyMissingError
from worldsync.replication.manager import ReplicationManager

pytestmark = pytest.mark.git_repo


@pytest.fixture
def make_manager(config, bare_remote, tmp_path):
    def factory(name: str) -> ReplicationManager:
        host_config = config.with_overrides(repo_dir=tmp_path / name / "repo", committer_name=name)
        return ReplicationManager(host_config, sleep=lambda _: None)

    return factory


def _git(path, *args):
    return subprocess.run(["git", *args], cwd=path, check=True, capture_output=True, text=True).stdout.strip()


def test_initialize_empty_remote_creates_and_pushes_initial_commit(make_manager, bare_remote):
    host_a = make_manager("host-a")

    host_a.initialize()

    assert host_a.initialized
    assert (host_a.repo_path / ".gitignore").read_text().startswith("logs/")
    assert _git(host_a.repo_path, "config", "core.autocrlf") == "false"
    assert _git(bare_remote, "log", "-1", "--format=%s", "main") == "Initial commit - worldsync setup"


def test_initialize_clones_existing_history(make_manager):
    host_a = make_manager("host-a")
    host_a.initialize()

    host_b = make_manager("host-b")
    host_b.initialize()

    assert host_b.current_revision() == host_a.current_revision()
    assert _git(host_b.repo_path, "config", "user.name") == "host-b"


def test_initialize_is_idempotent(make_manager):
    host_a = make_manager("host-a")
    host_a.initialize()
    revision = host_a.current_revision()

    host_a.initialize()
    assert host_a.current_revision() == revision


def test_initialize_unreachable_remote_fails_immediately(config, git_env, tmp_path):
    manager = ReplicationManager(
        config.with_overrides(remote_url=str(tmp_path / "missing.git"), repo_dir=tmp_path / "repo"),
        sleep=lambda _: None,
    )

    with pytest.raises(RemoteUnavailableError):
        manager.initialize()


def test_operations_require_working_copy(make_manager):
    host_a = make_manager("host-a")
    with pytest.raises(WorkingCopyMissingError):
        host_a.push("save")


def test_push_then_pull_moves_world_between_hosts(make_manager):
    host_a = make_manager("host-a")
    host_a.initialize()
    host_b = make_manager("host-b")
    host_b.initialize()

    world = host_a.world_path("alpha")
    world.mkdir(parents=True)
    (world / "level.dat").write_bytes(b"\x0a" * 200)
    (world / "region").mkdir()
    (world / "region" / "r.0.0.mca").write_bytes(b"chunk")

    pushed = host_a.push("[session:alpha] World save")
    assert pushed.changed_count >= 1
    assert not host_a.has_local_changes()

    assert host_b.is_remote_ahead()
    pulled = host_b.pull()

    assert pulled.revision_id == pushed.revision_id
    assert pulled.changed_count == 2
    assert (host_b.world_path("alpha") / "region" / "r.0.0.mca").read_bytes() == b"chunk"
    assert not host_b.is_remote_ahead()


def test_push_without_changes_does_not_commit(make_manager):
    host_a = make_manager("host-a")
    host_a.initialize()
    before = host_a.current_revision()

    result = host_a.push("nothing")

    assert result.changed_count == 0
    assert result.revision_id == before


def test_pull_when_up_to_date(make_manager):
    host_a = make_manager("host-a")
    host_a.initialize()

    result = host_a.pull()

    assert result.changed_count == 0
    assert result.revision_id == host_a.current_revision()


def test_ignored_files_are_not_replicated(make_manager):
    host_a = make_manager("host-a")
    host_a.initialize()
    world = host_a.world_path("alpha")
    (world / "logs").mkdir(parents=True)
    (world / "logs" / "latest.log").write_text("noise")
    (world / "session.lock").write_text("lock")

    assert not host_a.has_local_changes()


def test_history_newest_first_with_session_keys(make_manager, monkeypatch):
    host_a = make_manager("host-a")
    host_a.initialize()
    world = host_a.world_path("alpha")
    world.mkdir(parents=True)

    messages = []
    for index in range(8):
        key = "alpha" if index in (2, 5, 7) else "beta"
        message = f"[session:{key}] World save - {index}\n\nHash: {index:064x}"
        messages.append(message)
        (world / "level.dat").write_text(f"save {index}")
        date = f"2026-03-01T12:{index:02d}:00+00:00"
        monkeypatch.setenv("GIT_AUTHOR_DATE", date)
        monkeypatch.setenv("GIT_COMMITTER_DATE", date)
        host_a.push(message)

    history = host_a.get_history(5)

    assert len(history) == 5
    assert [revision.message for revision in history] == list(reversed(messages))[:5]
    timestamps = [revision.timestamp for revision in history]
    assert timestamps == sorted(timestamps, reverse=True)
    assert len(set(timestamps)) == 5
    assert [revision.session_key for revision in history] == ["alpha", "beta", "alpha", "beta", "beta"]
    assert history[0].author_label == "host-a"
    assert history[0].summary == "[session:alpha] World save - 7"


def test_restore_resets_remote_and_keeps_safety_branch(make_manager, bare_remote):
    host_a = make_manager("host-a")
    host_a.initialize()
    world = host_a.world_path("alpha")
    world.mkdir(parents=True)

    (world / "level.dat").write_text("good")
    good = host_a.push("[session:alpha] good").revision_id
    (world / "level.dat").write_text("griefed")
    bad = host_a.push("[session:alpha] bad").revision_id

    restored = host_a.restore(good)

    assert restored.revision_id == good
    assert (world / "level.dat").read_text() == "good"
    assert _git(bare_remote, "rev-parse", "main") == good
    backups = _git(bare_remote, "branch", "--list", "backup-*").split()
    assert len(backups) == 1
    assert _git(bare_remote, "rev-parse", backups[0]) == bad


def test_pull_follows_restore_made_on_another_host(make_manager, bare_remote):
    host_a = make_manager("host-a")
    host_a.initialize()
    world_a = host_a.world_path("alpha")
    world_a.mkdir(parents=True)
    (world_a / "level.dat").write_text("one")
    first = host_a.push("[session:alpha] one").revision_id
    (world_a / "level.dat").write_text("two")
    second = host_a.push("[session:alpha] two").revision_id

    host_b = make_manager("host-b")
    host_b.initialize()
    host_b.pull()
    assert host_b.current_revision() == second

    host_a.restore(first)
    assert host_b.is_remote_ahead()

    result = host_b.pull()

    assert result.revision_id == first
    assert result.changed_count == 1
    assert (host_b.world_path("alpha") / "level.dat").read_text() == "one"
    backups = _git(host_b.repo_path, "branch", "--list", "backup-*").split()
    assert [_git(host_b.repo_path, "rev-parse", name) for name in backups] == [second]

    host_b.push("[session:alpha] after restore")
    assert _git(bare_remote, "rev-parse", "main") == first


def test_pull_keeps_unpushed_local_commits(make_manager):
    host_a = make_manager("host-a")
    host_a.initialize()
    world = host_a.world_path("alpha")
    world.mkdir(parents=True)
    (world / "level.dat").write_text("unpushed")
    _git(host_a.repo_path, "add", "-A")
    _git(host_a.repo_path, "commit", "-m", "[session:alpha] unpushed")
    local = host_a.current_revision()

    result = host_a.pull()

    assert result.revision_id == local
    assert (world / "level.dat").read_text() == "unpushed"
    assert _git(host_a.repo_path, "branch", "--list", "backup-*") == ""


def test_restore_unknown_revision(make_manager):
    host_a = make_manager("host-a")
    host_a.initialize()

    with pytest.raises(ReplicationError, match="unknown revision"):
        host_a.restore("0" * 40)


def test_integrity_size_and_cleanup(make_manager):
    host_a = make_manager("host-a")
    host_a.initialize()
    stray = host_a.repo_path / "stray" / "file.txt"
    stray.parent.mkdir()
    stray.write_text("x")

    assert host_a.verify_integrity()
    assert host_a.repository_size() > 0

    host_a.cleanup()
    assert not stray.exists()
    assert (host_a.repo_path / ".gitignore").exists()


def test_profile_paths(make_manager):
    host_a = make_manager("host-a")
    assert host_a.world_path("alpha") == host_a.repo_path / "worlds" / "alpha"
    assert host_a.mods_path("alpha") == host_a.repo_path / "mods" / "alpha"
    assert host_a.config_path("alpha") == host_a.repo_path / "config" / "alpha"
