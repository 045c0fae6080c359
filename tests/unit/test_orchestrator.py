"""
Unit tests for the stage pipeline: skipping, retries, per-container isolation
and rollback.
"""

import errno

import pytest

from conftest import NVIDIA_MAJOR, container_decl
from phoenix_orchestrator import main as entry
from phoenix_orchestrator.core.config_store import ConfigStore
from phoenix_orchestrator.core.errors import EnvironmentalError, HostStageError, TransientError
from phoenix_orchestrator.core.models import ContainerStatus, Stage, StageScope, StageStatus
from phoenix_orchestrator.core.stages import CONTAINER_STAGE_IDS, HOST_STAGE_IDS
from phoenix_orchestrator.devices.lxc_config import LxcConfig
from phoenix_orchestrator.main import Context
from phoenix_orchestrator.storage.marker_store import container_marker_key, container_marker_prefix


def test_end_to_end_gpu_and_plain_container(make_orchestrator, lifecycle, markers):
    orch = make_orchestrator({
        "901": container_decl("gpu-worker", 101, gpus=[0]),
        "902": container_decl("plain", 102, gpus=[]),
    })

    report = orch.run()

    assert report.exit_code == 0
    assert report.succeeded == 2
    assert [r.stage_id for r in report.host_results] == list(HOST_STAGE_IDS)

    gpu_conf = LxcConfig.parse(lifecycle.config_path(901).read_text())
    gpu_rules = [d for d in gpu_conf.passthrough_directives() if d.key == "lxc.cgroup2.devices.allow"]
    assert len([d for d in gpu_rules if d.major == NVIDIA_MAJOR]) == 1

    plain_conf = LxcConfig.parse(lifecycle.config_path(902).read_text())
    assert plain_conf.passthrough_directives() == []

    for cid in (901, 902):
        assert lifecycle.status(cid) == ContainerStatus.RUNNING
        for stage_id in CONTAINER_STAGE_IDS:
            assert markers.exists(container_marker_key(cid, stage_id))


def test_second_run_skips_everything(make_orchestrator, lifecycle):
    configs = {"901": container_decl("gpu-worker", 101, gpus="0")}
    make_orchestrator(configs).run()
    conf_before = lifecycle.config_path(901).read_text()
    calls_before = list(lifecycle.calls)

    report = make_orchestrator(configs).run()

    assert report.exit_code == 0
    assert all(r.status == StageStatus.SKIPPED for r in report.containers[901].results)
    assert all(r.status == StageStatus.SKIPPED for r in report.host_results)
    assert lifecycle.calls == calls_before
    assert lifecycle.config_path(901).read_text() == conf_before


def test_partial_failure_isolated_to_one_container(make_orchestrator, lifecycle, markers, sleeps):
    lifecycle.fail_on["create"] = {902}
    orch = make_orchestrator({
        "901": container_decl("a", 101),
        "902": container_decl("b", 102),
        "903": container_decl("c", 103),
    })

    report = orch.run()

    assert report.succeeded == 2
    assert report.failed == 1
    assert report.exit_code == 1
    failed = report.containers[902]
    assert failed.results[0].stage_id == "create"
    assert failed.results[0].status == StageStatus.FAILED
    assert failed.results[0].attempts == 3
    assert isinstance(failed.error, TransientError)
    assert lifecycle.ops("create").count(902) == 3
    assert sleeps == [0, 0]
    assert markers.keys(container_marker_prefix(902)) == []
    assert lifecycle.status(903) == ContainerStatus.RUNNING


def test_containers_processed_core_first_then_ascending(make_orchestrator, lifecycle):
    make_orchestrator({
        "120": container_decl("late", 120),
        "995": container_decl("core", 95),
        "101": container_decl("early", 101),
    }).run()

    assert lifecycle.ops("create") == [995, 101, 120]


def test_deleting_one_marker_reruns_only_that_stage(make_orchestrator, lifecycle, markers):
    configs = {"901": container_decl("a", 101)}
    make_orchestrator(configs).run()
    markers.revoke(container_marker_key(901, "start"))
    creates, starts = len(lifecycle.ops("create")), len(lifecycle.ops("start"))

    report = make_orchestrator(configs).run()

    statuses = {r.stage_id: r.status for r in report.containers[901].results}
    assert statuses["start"] == StageStatus.SUCCESS
    assert [s for s, st in statuses.items() if st == StageStatus.SUCCESS] == ["start"]
    assert len(lifecycle.ops("create")) == creates
    assert len(lifecycle.ops("start")) == starts + 1


def test_rollback_removes_container_and_markers(make_orchestrator, lifecycle, markers):
    lifecycle.fail_on["start"] = {901}
    report = make_orchestrator({"901": container_decl("a", 101)}).run()

    container = report.containers[901]
    assert not container.succeeded
    assert container.rolled_back is True
    assert lifecycle.status(901) == ContainerStatus.UNKNOWN
    assert not lifecycle.config_path(901).exists()
    assert markers.keys(container_marker_prefix(901)) == []
    assert markers.exists("host_initial_setup")


def test_rollback_step_failure_does_not_mask_original_error(make_orchestrator, lifecycle, markers):
    lifecycle.fail_on["start"] = {901}
    lifecycle.fail_on["destroy"] = {901}
    report = make_orchestrator({"901": container_decl("a", 101)}).run()

    container = report.containers[901]
    assert container.rolled_back is False
    assert "start" in str(container.error)
    assert markers.keys(container_marker_prefix(901)) == []


def test_rollback_disabled_keeps_completed_markers(make_orchestrator, lifecycle, markers):
    lifecycle.fail_on["start"] = {901}
    report = make_orchestrator({"901": container_decl("a", 101)}, rollback_on_failure=False).run()

    assert report.containers[901].rolled_back is False
    assert markers.exists(container_marker_key(901, "create"))
    assert not markers.exists(container_marker_key(901, "start"))
    assert 901 not in lifecycle.ops("destroy")


def test_invalid_declaration_reported_without_running_stages(make_orchestrator, lifecycle):
    report = make_orchestrator({
        "901": container_decl("ok", 101),
        "902": container_decl("bad-gpu", 102, gpus="zero"),
    }).run()

    assert report.containers[902].results == []
    assert report.containers[902].error is not None
    assert 902 not in lifecycle.ops("create")
    assert report.succeeded == 1
    assert report.exit_code == 1


def test_host_stage_failure_aborts_before_containers(make_orchestrator, lifecycle):
    import subprocess

    def failing_runner(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 2, stdout="", stderr="apt lock held")

    orch = make_orchestrator(
        {"901": container_decl("a", 101)},
        host={"setup_commands": ["apt-get update"]},
        runner=failing_runner,
    )

    with pytest.raises(HostStageError) as exc:
        orch.run()

    assert exc.value.stage_id == "initial_setup"
    assert lifecycle.calls == []


def test_permanent_failure_is_not_retried(make_orchestrator, lifecycle, sleeps):
    # Config file vanishes between create and passthrough.
    original_create = lifecycle.create

    def create_without_conf(cid, spec):
        original_create(cid, spec)
        lifecycle.config_path(cid).unlink()

    lifecycle.create = create_without_conf
    report = make_orchestrator({"901": container_decl("a", 101, gpus="0")}).run()

    result = report.containers[901].results[-1]
    assert result.stage_id == "passthrough"
    assert result.attempts == 1
    assert sleeps == []


def test_environmental_error_in_container_stage_aborts_run(make_orchestrator, lifecycle):
    def broken_start(cid):
        raise EnvironmentalError("pct not found")

    lifecycle.start = broken_start
    orch = make_orchestrator({"901": container_decl("a", 101), "902": container_decl("b", 102)})

    with pytest.raises(EnvironmentalError):
        orch.run()
    assert 902 not in lifecycle.ops("create")


def test_stage_events_reach_sink(make_orchestrator):
    events = []
    make_orchestrator({"901": container_decl("a", 101)}, event_sink=events.append).run()

    container_events = [e for e in events if e["container_id"] == 901]
    assert [e["stage_id"] for e in container_events] == list(CONTAINER_STAGE_IDS)
    assert {e["status"] for e in container_events} == {"success"}


def test_run_stage_records_marker_only_after_success(make_orchestrator, markers):
    orch = make_orchestrator({})
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 2:
            raise TransientError("mirror timeout")
        assert not markers.exists("host_flaky")

    result = orch.run_stage(Stage(id="flaky", scope=StageScope.HOST, action=flaky, idempotency_key="host_flaky"))

    assert result.status == StageStatus.SUCCESS
    assert result.attempts == 2
    assert markers.exists("host_flaky")


def test_marker_write_failure_aborts_with_stage_context(make_orchestrator, markers, lifecycle, monkeypatch):
    real_record = markers.record

    def full_disk(key, owner):
        if key == container_marker_key(901, "create"):
            raise OSError(errno.ENOSPC, "No space left on device")
        return real_record(key, owner)

    monkeypatch.setattr(markers, "record", full_disk)
    orch = make_orchestrator({"901": container_decl("a", 101), "902": container_decl("b", 102)})

    with pytest.raises(EnvironmentalError) as exc_info:
        orch.run()

    err = exc_info.value
    assert (err.stage_id, err.container_id) == ("create", 901)
    assert isinstance(err.__cause__, OSError)
    assert "No space left" in str(err)
    assert 902 not in lifecycle.ops("create")


def test_marker_read_failure_is_environmental(make_orchestrator, markers, monkeypatch):
    def unreadable(key):
        raise PermissionError(errno.EACCES, "Permission denied")

    monkeypatch.setattr(markers, "exists", unreadable)
    orch = make_orchestrator({})

    with pytest.raises(EnvironmentalError) as exc_info:
        orch.run_stage(Stage(id="check_driver", scope=StageScope.HOST, action=lambda: None,
                             idempotency_key="host_check_driver"))

    assert exc_info.value.stage_id == "check_driver"


def test_marker_store_failure_exits_1(settings, logger, lifecycle, inventory, markers, planner, monkeypatch):
    def read_only(key, owner):
        raise OSError(errno.EROFS, "Read-only file system")

    monkeypatch.setattr(markers, "record", read_only)
    snapshot = ConfigStore(settings, logger).parse({"lxc_configs": {"901": container_decl("a", 101)}})
    ctx = Context(settings=settings, logger=logger, snapshot=snapshot, markers=markers,
                  lifecycle=lifecycle, inventory=inventory, planner=planner)

    assert entry.run(ctx, check_tools=False) == 1
