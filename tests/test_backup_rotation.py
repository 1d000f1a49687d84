import logging
import os
import signal
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

import backup_rotation
from archive_catalog import Tier, format_archive_name
from backup_rotation import (
    ConfigurationError,
    RotationConfig,
    merge_config,
    parse_args,
    read_config_file,
    run_backups,
    run_rotation,
)
from fakes import FakeStore


HOST = "h"
TARGETS = ["/etc", "/var/www"]


def build_config(
    tmp_path: Path,
    *,
    pre_hook: Optional[Path] = None,
    post_hook: Optional[Path] = None,
    dry_run: bool = False,
) -> RotationConfig:
    return RotationConfig(
        host=HOST,
        targets=list(TARGETS),
        lock_path=tmp_path / "rotation.lock",
        pre_hook=pre_hook,
        post_hook=post_hook,
        dry_run=dry_run,
    )


def batch(tier: Tier, when: datetime) -> List[str]:
    return [
        format_archive_name(HOST, tier, when + timedelta(seconds=index), target)
        for index, target in enumerate(TARGETS)
    ]


def populated_archives() -> List[str]:
    """A full year of history as of 2025-03-15: 13 monthly and 31 daily batches."""
    names = batch(Tier.YEARLY, datetime(2024, 1, 1, 2, 0, 0))
    names += batch(Tier.YEARLY, datetime(2025, 1, 1, 2, 0, 0))
    year, month = 2024, 3
    for _ in range(13):
        names += batch(Tier.MONTHLY, datetime(year, month, 1, 2, 0, 0))
        month += 1
        if month > 12:
            year, month = year + 1, 1
    day = datetime(2025, 2, 9, 2, 0, 0)
    while day < datetime(2025, 3, 13):
        if day.day != 1:
            names += batch(Tier.DAILY, day)
        day += timedelta(days=1)
    return names


def write_hook(path: Path, body: str, *, executable: bool = True) -> Path:
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(0o755 if executable else 0o644)
    return path


def test_first_run_takes_yearly_backup(tmp_path: Path) -> None:
    store = FakeStore()
    config = build_config(tmp_path)

    exit_code = run_rotation(config, store, now=datetime(2024, 3, 15, 10, 0, 0))

    assert exit_code == 0
    assert store.archives == {
        "h-yearly-2024-03-15_10:00:00-etc",
        "h-yearly-2024-03-15_10:00:00-varwww",
    }
    assert [call[0] for call in store.calls] == ["list", "create", "create", "list"]
    assert not config.lock_path.exists()


def test_daily_run_prunes_oldest_batches(tmp_path: Path) -> None:
    store = FakeStore(populated_archives())
    config = build_config(tmp_path)

    exit_code = run_rotation(config, store, now=datetime(2025, 3, 15, 2, 0, 0))

    assert exit_code == 0
    assert store.calls_of("create") == [
        ("create", "h-daily-2025-03-15_02:00:00-etc", "/etc"),
        ("create", "h-daily-2025-03-15_02:00:00-varwww", "/var/www"),
    ]
    deleted = {call[1] for call in store.calls_of("delete")}
    assert deleted == {
        "h-monthly-2024-03-01_02:00:00-etc",
        "h-monthly-2024-03-01_02:00:01-varwww",
        "h-daily-2025-02-09_02:00:00-etc",
        "h-daily-2025-02-09_02:00:01-varwww",
    }
    assert "h-yearly-2024-01-01_02:00:00-etc" in store.archives
    assert not config.lock_path.exists()


def test_failed_backup_vetoes_pruning(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    store = FakeStore(populated_archives(), fail_create=["/etc"])
    config = build_config(tmp_path)

    exit_code = run_rotation(config, store, now=datetime(2025, 3, 15, 2, 0, 0))

    assert exit_code == 1
    assert len(store.calls_of("create")) == 2
    assert store.calls_of("delete") == []
    assert len(store.calls_of("list")) == 1
    assert "h-daily-2025-03-15_02:00:00-varwww" in store.archives
    assert "event=backup_error tier=daily directory=/etc" in caplog.text
    assert "event=prune_skipped" in caplog.text
    assert not config.lock_path.exists()


def test_held_lock_aborts_without_store_calls(tmp_path: Path) -> None:
    config = build_config(tmp_path)
    config.lock_path.mkdir()
    (config.lock_path / "pid").write_text("999\n")
    store = FakeStore()

    exit_code = run_rotation(config, store, now=datetime(2024, 3, 15))

    assert exit_code == 1
    assert store.calls == []
    assert (config.lock_path / "pid").read_text() == "999\n"


def test_catalog_failure_releases_lock(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    store = FakeStore(fail_list=True)
    config = build_config(tmp_path)

    exit_code = run_rotation(config, store, now=datetime(2024, 3, 15))

    assert exit_code == 1
    assert store.calls_of("create") == []
    assert "event=catalog_failed" in caplog.text
    assert not config.lock_path.exists()


def test_non_executable_pre_hook_is_fatal(tmp_path: Path) -> None:
    hook = write_hook(tmp_path / "pre.sh", "exit 0", executable=False)
    store = FakeStore()
    config = build_config(tmp_path, pre_hook=hook)

    exit_code = run_rotation(config, store, now=datetime(2024, 3, 15))

    assert exit_code == 1
    assert store.calls_of("create") == []
    assert not config.lock_path.exists()


def test_non_executable_post_hook_stops_run_before_pre_hook(tmp_path: Path) -> None:
    log_file = tmp_path / "hooks.log"
    pre = write_hook(tmp_path / "pre.sh", f"echo stopped-db >> {log_file}")
    post = write_hook(tmp_path / "post.sh", f"echo started-db >> {log_file}", executable=False)
    store = FakeStore()
    config = build_config(tmp_path, pre_hook=pre, post_hook=post)

    exit_code = run_rotation(config, store, now=datetime(2024, 3, 15))

    assert exit_code == 1
    assert not log_file.exists()
    assert store.calls == []
    assert not config.lock_path.exists()


def test_hooks_wrap_backup_phase(tmp_path: Path) -> None:
    log_file = tmp_path / "hooks.log"
    pre = write_hook(tmp_path / "pre.sh", f"echo pre >> {log_file}")
    post = write_hook(tmp_path / "post.sh", f"echo post >> {log_file}")
    store = FakeStore(fail_create=["/var/www"])
    config = build_config(tmp_path, pre_hook=pre, post_hook=post)

    exit_code = run_rotation(config, store, now=datetime(2024, 3, 15))

    assert exit_code == 1
    assert log_file.read_text().split() == ["pre", "post"]


def test_post_hook_failure_skips_pruning(tmp_path: Path) -> None:
    post = write_hook(tmp_path / "post.sh", "echo broken >&2\nexit 3")
    store = FakeStore(populated_archives())
    config = build_config(tmp_path, post_hook=post)

    exit_code = run_rotation(config, store, now=datetime(2025, 3, 15, 2, 0, 0))

    assert exit_code == 1
    assert store.calls_of("delete") == []


def test_dry_run_plans_without_changes(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    archives = populated_archives()
    store = FakeStore(archives)
    config = build_config(tmp_path, dry_run=True)

    exit_code = run_rotation(config, store, now=datetime(2025, 3, 15, 2, 0, 0))

    assert exit_code == 0
    assert store.archives == set(archives)
    assert {call[0] for call in store.calls} == {"list"}
    assert "event=backup_planned" in caplog.text
    assert "event=prune_planned tier=daily archive=h-daily-2025-02-09_02:00:00-etc" in caplog.text


def test_run_backups_continues_after_failure() -> None:
    store = FakeStore(fail_create=["/etc"])

    results = run_backups(
        store,
        ["/etc", "/srv", "/home"],
        tier=Tier.MONTHLY,
        timestamp=datetime(2024, 5, 1, 0, 0, 0),
        host=HOST,
    )

    assert [result.ok for result in results] == [False, True, True]
    assert results[0].error is not None
    assert results[1].archive_name == "h-monthly-2024-05-01_00:00:00-srv"


def test_merge_config_from_file_and_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "rotation.ini"
    config_path.write_text(
        "[rotation]\n"
        "host = web01\n"
        "targets =\n"
        "    /etc\n"
        "    /var/www, /home\n"
        "archive_tool = sudo borg\n"
        "repository = /srv/borg\n"
        "create_options = --stats --compression lz4\n"
        "lock_path = /run/rotation.lock\n"
        "use_local_time = yes\n"
        "keep_monthly = 6\n"
    )
    args = parse_args(["-c", str(config_path), "--keep-daily", "7", "--dry-run"])

    config = merge_config(args, read_config_file(config_path))

    assert config.host == "web01"
    assert config.targets == ["/etc", "/var/www", "/home"]
    assert config.archive_tool == ["sudo", "borg"]
    assert config.repository == "/srv/borg"
    assert config.create_options == ["--stats", "--compression", "lz4"]
    assert config.lock_path == Path("/run/rotation.lock")
    assert config.use_local_time is True
    assert config.keep_monthly == 6
    assert config.keep_daily == 7
    assert config.dry_run is True


def test_merge_config_defaults() -> None:
    config = merge_config(parse_args(["--host", "h", "--target", "/etc"]), None)

    assert config.archive_tool == ["borg"]
    assert config.create_options == []
    assert config.repository is None
    assert config.use_local_time is False
    assert config.keep_monthly == 12
    assert config.keep_daily == 31
    assert config.pre_hook is None


@pytest.mark.parametrize(
    "argv",
    [
        ["--host", "h"],
        ["--host", "h", "--target", "/etc", "--keep-monthly", "0"],
        ["--host", "bad host", "--target", "/etc"],
    ],
)
def test_merge_config_rejects_invalid(argv: List[str]) -> None:
    with pytest.raises(ConfigurationError):
        merge_config(parse_args(argv), None)


@pytest.mark.parametrize(
    "targets",
    [
        ["/etc", "/etc"],
        ["/var/www", "/varwww"],
    ],
)
def test_merge_config_rejects_colliding_targets(targets: List[str]) -> None:
    argv = ["--host", "h"]
    for target in targets:
        argv += ["--target", target]

    with pytest.raises(ConfigurationError, match="archive suffix"):
        merge_config(parse_args(argv), None)


def test_merge_config_rejects_bad_boolean() -> None:
    with pytest.raises(ConfigurationError):
        merge_config(
            parse_args(["--host", "h", "--target", "/etc"]),
            {"use_local_time": "maybe"},
        )


def test_read_config_file_requires_section(tmp_path: Path) -> None:
    config_path = tmp_path / "rotation.ini"
    config_path.write_text("[backup]\nhost = h\n")

    with pytest.raises(ConfigurationError):
        read_config_file(config_path)


def test_main_runs_rotation(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = FakeStore()
    monkeypatch.setattr(backup_rotation, "create_store", lambda config: store)

    exit_code = backup_rotation.main(
        ["--host", HOST, "--target", "/etc", "--lock-path", str(tmp_path / "rotation.lock")]
    )

    assert exit_code == 0
    assert len(store.calls_of("create")) == 1
    assert store.calls_of("create")[0][1].startswith("h-yearly-")


def test_main_reports_configuration_error(tmp_path: Path) -> None:
    exit_code = backup_rotation.main(["--config", str(tmp_path / "missing.ini")])

    assert exit_code == 1


def test_main_releases_lock_when_interrupted(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    class InterruptingStore(FakeStore):
        def create_archive(self, name: str, path: str) -> None:
            super().create_archive(name, path)
            os.kill(os.getpid(), signal.SIGTERM)

    store = InterruptingStore()
    monkeypatch.setattr(backup_rotation, "create_store", lambda config: store)
    lock_path = tmp_path / "rotation.lock"
    previous_handler = signal.getsignal(signal.SIGTERM)

    exit_code = backup_rotation.main(
        ["--host", HOST, "--target", "/etc", "--target", "/home", "--lock-path", str(lock_path)]
    )

    assert exit_code == 1
    assert len(store.calls_of("create")) == 1
    assert store.calls_of("delete") == []
    assert not lock_path.exists()
    assert signal.getsignal(signal.SIGTERM) == previous_handler
