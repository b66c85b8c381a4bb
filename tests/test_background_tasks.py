"""Tests for warmup requests and source watching."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import requests

from devward.local.supervisor import background_tasks
from devward.local.supervisor.background_tasks import ServiceChangeHandler, rebuild_and_restart, start_watching
from devward.local.supervisor.definition import OperationConfig, ServiceWatch, Warmup
from devward.local.supervisor.errors import CommandFailedError

from conftest import make_service


def _controller(service):
    controller = MagicMock()
    controller.service = service
    controller.get_name.return_value = service.name
    return controller


def test_warmup_requests_url(tmp_path, monkeypatch):
    """Test that warmup issues one GET with the configured timeout."""
    get = MagicMock(return_value=SimpleNamespace(status_code=200))
    monkeypatch.setattr(background_tasks.requests, "get", get)
    service = make_service(tmp_path=tmp_path, warmup=Warmup(url="http://localhost:9/health"))

    background_tasks.start_warmup(service).join(timeout=5)

    get.assert_called_once_with("http://localhost:9/health", timeout=background_tasks.config.WARMUP_TIMEOUT)


def test_warmup_failure_is_not_fatal(tmp_path, monkeypatch, caplog):
    def refuse(url, timeout):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(background_tasks.requests, "get", refuse)
    service = make_service(tmp_path=tmp_path, warmup=Warmup(url="http://localhost:9/"))

    background_tasks.start_warmup(service).join(timeout=5)
    background_tasks.wait_for_warmups()

    assert "Warmup request for api failed" in caplog.text


def test_rebuild_and_restart(tmp_path):
    """Test that a change rebuilds, stops and relaunches the service."""
    controller = _controller(make_service(tmp_path=tmp_path))
    cfg = OperationConfig()

    assert rebuild_and_restart(controller, cfg) is True
    assert [c[0] for c in controller.method_calls if c[0] != "get_name"] == ["build", "stop", "launch"]


def test_failed_rebuild_keeps_running_instance(tmp_path):
    """Test that a broken build leaves the running process alone."""
    controller = _controller(make_service(tmp_path=tmp_path))
    controller.build.side_effect = CommandFailedError("api", "make", 2)

    assert rebuild_and_restart(controller, OperationConfig()) is False
    controller.stop.assert_not_called()
    controller.launch.assert_not_called()


def test_change_handler_ignores_excluded_paths(tmp_path):
    src = tmp_path / "src"
    generated = src / "generated"
    service = make_service(tmp_path=tmp_path, watch=ServiceWatch(include=(src,), exclude=(generated,)))
    handler = ServiceChangeHandler(_controller(service), OperationConfig())

    assert handler.is_excluded(str(generated / "out.py"))
    assert not handler.is_excluded(str(src / "main.py"))


def test_change_handler_debounces(tmp_path):
    """Test that events within the debounce interval of the last one are dropped."""
    service = make_service(tmp_path=tmp_path, watch=ServiceWatch(include=(tmp_path,)))
    handler = ServiceChangeHandler(_controller(service), OperationConfig())

    assert handler._should_process_event() is True
    assert handler._should_process_event() is False
    handler.last_event -= handler.debounce_interval + 1
    assert handler._should_process_event() is True


def test_start_watching_without_watches(tmp_path):
    assert start_watching([_controller(make_service(tmp_path=tmp_path))], OperationConfig()) is None


def test_start_watching_schedules_existing_paths(tmp_path):
    """Test that an observer is started for services with an existing watch path."""
    service = make_service(tmp_path=tmp_path, watch=ServiceWatch(include=(tmp_path, tmp_path / "missing")))
    observer = start_watching([_controller(service)], OperationConfig())
    try:
        assert observer is not None
        assert observer.is_alive()
    finally:
        observer.stop()
        observer.join()


def test_start_watching_skips_excluded_services(tmp_path):
    service = make_service(tmp_path=tmp_path, watch=ServiceWatch(include=(tmp_path,)))
    cfg = OperationConfig(exclusions=frozenset({"api"}))
    assert start_watching([_controller(service)], cfg) is None
