import time
from unittest import mock

import pytest
from conftest import make_vdb
from kubernetes import client
from kubernetes.client.rest import ApiException

from vdbop import config, events
from vdbop.api.vdb import VerticaDBCondition
from vdbop.errors import PodExecError, ReconcileCancelled
from vdbop.events import EventRecorder
from vdbop.names import NamespacedName
from vdbop.service import pod_runner
from vdbop.service.kubectl import KubeCtl
from vdbop.service.pod_runner import PodRunner
from vdbop.utils.context import Context

POD = NamespacedName("default", "vertdb-sc1-0")


@pytest.fixture
def real_kubectl():
    kc = KubeCtl(api_client=mock.MagicMock())
    kc.core_v1_api = mock.MagicMock()
    kc.apps_v1_api = mock.MagicMock()
    kc.custom_api = mock.MagicMock()
    return kc


def test_getters_return_none_when_missing(ctx, real_kubectl):
    real_kubectl.core_v1_api.read_namespaced_pod.side_effect = ApiException(status=404)
    real_kubectl.apps_v1_api.read_namespaced_stateful_set.side_effect = ApiException(status=404)
    real_kubectl.custom_api.get_namespaced_custom_object.side_effect = ApiException(status=404)
    real_kubectl.core_v1_api.read_namespaced_secret.side_effect = ApiException(status=404)
    assert real_kubectl.get_pod(ctx, POD) is None
    assert real_kubectl.get_statefulset(ctx, POD) is None
    assert real_kubectl.get_vdb(ctx, POD) is None
    assert real_kubectl.read_secret(ctx, POD) is None


def test_getters_raise_other_errors(ctx, real_kubectl):
    real_kubectl.core_v1_api.read_namespaced_pod.side_effect = ApiException(status=403)
    with pytest.raises(ApiException):
        real_kubectl.get_pod(ctx, POD)


def test_cancelled_context_stops_api_calls(real_kubectl):
    ctx = Context.background()
    ctx.cancel()
    with pytest.raises(ReconcileCancelled):
        real_kubectl.get_pod(ctx, POD)
    real_kubectl.core_v1_api.read_namespaced_pod.assert_not_called()


def test_get_vdb_parses_custom_object(ctx, real_kubectl):
    real_kubectl.custom_api.get_namespaced_custom_object.return_value = make_vdb(shard_count=3).to_dict()
    vdb = real_kubectl.get_vdb(ctx, NamespacedName("default", "vertdb"))
    assert vdb.is_eon()
    assert vdb.spec.subclusters[0].name == "sc1"


def test_update_vdb_retries_conflicts(ctx, kubectl):
    vdb = make_vdb()
    kubectl.add_vdb(vdb)
    kubectl.conflicts_to_raise = 2

    def transform(v):
        v.spec.db_name = "newdb"
        return True

    assert kubectl.update_vdb(ctx, vdb.extract_namespaced_name(), transform)
    assert kubectl.replaced[-1]["spec"]["dbName"] == "newdb"


def test_update_vdb_no_change(ctx, kubectl):
    vdb = make_vdb()
    kubectl.add_vdb(vdb)
    assert not kubectl.update_vdb(ctx, vdb.extract_namespaced_name(), lambda v: False)
    assert not kubectl.update_vdb(ctx, NamespacedName("default", "gone"), lambda v: True)
    assert kubectl.replaced == []


def test_update_vdb_condition(ctx, kubectl):
    vdb = make_vdb()
    kubectl.add_vdb(vdb)
    kubectl.conflicts_to_raise = 1
    kubectl.update_vdb_condition(ctx, vdb, VerticaDBCondition(type="AutoRestartVertica", status="True"))
    assert len(kubectl.status_replaced) == 1
    cond = vdb.status.conditions[0]
    assert cond.status == "True"
    assert cond.last_transition_time.endswith("Z")


class FakeExecResponse:
    def __init__(self, stdout="", stderr="", returncode=0, hang=False):
        self._stdout = stdout
        self._stderr = stderr
        self.returncode = returncode
        self.hang = hang
        self.closed = False
        self.read_timeouts = []

    def run_forever(self, timeout=None):
        self.timeout = timeout
        if self.hang:
            time.sleep(timeout)

    def is_open(self):
        return self.hang and not self.closed

    def _read(self, data, timeout):
        self.read_timeouts.append(timeout)
        if timeout is None and self.is_open():
            raise AssertionError("read with no timeout on an open stream blocks forever")
        return data

    def read_stdout(self, timeout=None):
        return self._read(self._stdout, timeout)

    def read_stderr(self, timeout=None):
        return self._read(self._stderr, timeout)

    def close(self):
        self.closed = True


@pytest.fixture
def exec_calls(monkeypatch):
    calls = []
    responses = []

    def fake_stream(fn, **kwargs):
        calls.append(kwargs)
        return responses.pop(0) if responses else FakeExecResponse()

    monkeypatch.setattr(pod_runner.stream, "stream", fake_stream)
    return calls, responses


def test_exec_in_pod(ctx, real_kubectl, exec_calls):
    calls, responses = exec_calls
    resp = FakeExecResponse(stdout="hello\n")
    responses.append(resp)
    out, _ = PodRunner(real_kubectl).exec_in_pod(ctx, POD, "server", "echo", "hello")
    assert out == "hello\n"
    assert calls[0]["command"] == ["echo", "hello"]
    assert calls[0]["container"] == "server"
    assert resp.closed
    assert resp.read_timeouts == [0, 0]


def test_exec_in_pod_failure_redacts_password(ctx, real_kubectl, exec_calls):
    _, responses = exec_calls
    responses.append(FakeExecResponse(stderr="authentication failed", returncode=2))
    with pytest.raises(PodExecError) as exc_info:
        PodRunner(real_kubectl, vsql_password="hunter2").exec_vsql(ctx, POD, "server", "-tAc", "select 1")
    assert exc_info.value.returncode == 2
    assert "hunter2" not in str(exc_info.value)
    assert "--password" in exc_info.value.command


def test_exec_respects_context_deadline(real_kubectl, exec_calls):
    _, responses = exec_calls
    resp = FakeExecResponse()
    responses.append(resp)
    ctx = Context.background().with_timeout(5)
    PodRunner(real_kubectl).exec_in_pod(ctx, POD, "server", "true")
    assert resp.timeout <= 5


def test_exec_timeout_closes_stream_without_reading(ctx, real_kubectl, exec_calls, monkeypatch):
    _, responses = exec_calls
    monkeypatch.setattr(config, "_config", config.OperatorConfig(exec=config.ExecConfig(timeout_seconds=1)))
    resp = FakeExecResponse(hang=True)
    resp.run_forever = lambda timeout=None: setattr(resp, "timeout", timeout)
    responses.append(resp)
    with pytest.raises(PodExecError) as exc_info:
        PodRunner(real_kubectl).exec_in_pod(ctx, POD, "server", "sleep", "999")
    assert "timed out" in str(exc_info.value)
    assert resp.timeout == 1
    assert resp.read_timeouts == []
    assert resp.closed


def test_exec_cut_short_by_deadline_cancels_pass(real_kubectl, exec_calls):
    _, responses = exec_calls
    resp = FakeExecResponse(hang=True)
    responses.append(resp)
    ctx = Context.background().with_timeout(0.05)
    with pytest.raises(ReconcileCancelled):
        PodRunner(real_kubectl).exec_in_pod(ctx, POD, "server", "sleep", "999")
    assert 0 < resp.timeout <= 0.05
    assert resp.read_timeouts == []
    assert resp.closed


def test_exec_with_no_time_left_never_opens_stream(real_kubectl, exec_calls):
    calls, _ = exec_calls
    ctx = Context(deadline=time.monotonic() - 1)
    with pytest.raises(ReconcileCancelled):
        PodRunner(real_kubectl).exec_in_pod(ctx, POD, "server", "true")
    assert calls == []


def test_copy_to_pod(ctx, real_kubectl, exec_calls, tmp_path):
    calls, responses = exec_calls
    src = tmp_path / "script.sh"
    src.write_text("echo hi\n")
    responses.extend([FakeExecResponse(), FakeExecResponse(stdout="hi\n")])
    out, _ = PodRunner(real_kubectl).copy_to_pod(ctx, POD, "server", str(src), "/tmp/script.sh", "bash", "/tmp/script.sh")
    assert out == "hi\n"
    assert "base64 --decode > /tmp/script.sh" in calls[0]["command"][-1]
    assert calls[1]["command"] == ["bash", "/tmp/script.sh"]


def test_event_recorder(kubectl):
    vdb = make_vdb()
    EventRecorder(kubectl).event(vdb, events.EVENT_TYPE_NORMAL, events.NODE_RESTART_STARTED, "restarting")
    body = kubectl.events[0]
    assert isinstance(body, client.CoreV1Event)
    assert body.reason == events.NODE_RESTART_STARTED
    assert body.involved_object.name == "vertdb"
    assert body.involved_object.uid == "abcd-1234"
    assert body.source.component == events.COMPONENT


def test_event_recorder_drops_api_errors(kubectl):
    kubectl.create_event = mock.MagicMock(side_effect=ApiException(status=403, reason="Forbidden"))
    EventRecorder(kubectl).event(make_vdb(), events.EVENT_TYPE_WARNING, events.REVIVE_DB_FAILED, "bad")
    kubectl.create_event.assert_called_once()
