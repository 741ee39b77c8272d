import os
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from rollout.config import Settings
from rollout.errors import NotCancellableError
from rollout.models import ArtifactRef, RolloutRecord, RolloutState
from rollout.services.rollout_service import RolloutService

ASSETS_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "assets")
ARTIFACT = ArtifactRef(repository="gcr.io/my-project/gkeapp", digest="sha256:abc")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        records_file=str(tmp_path / "rollouts.yaml"),
        template_file=os.path.join(ASSETS_DIR, "deployment.yaml"),
    )

def finished(state, **changes):
    record = RolloutRecord(id="gkeapp-0001", workload="gkeapp", started_at=datetime.now(timezone.utc))
    return replace(record, state=state, **changes)

@pytest.fixture
def controller():
    controller = MagicMock()
    controller.__enter__.return_value = controller
    controller.recover_interrupted.return_value = []
    controller.start_rollout.return_value = "gkeapp-0001"
    return controller

@pytest.fixture
def service(settings, controller):
    svc = RolloutService(settings, "gkeapp", ARTIFACT, {"replicas": "2"})
    svc.logger = MagicMock()
    svc.create_controller = MagicMock(return_value=controller)
    return svc

def test_run_success(service, controller):
    controller.wait.return_value = finished(RolloutState.SUCCEEDED)
    service.run()
    controller.start_rollout.assert_called_once_with("gkeapp", ARTIFACT, {"replicas": "2"})
    controller.__exit__.assert_called_once()

def test_run_recovers_interrupted_rollouts_first(service, controller):
    controller.recover_interrupted.return_value = [finished(RolloutState.FAILED, id="gkeapp-0000")]
    controller.wait.return_value = finished(RolloutState.SUCCEEDED)
    service.run()
    assert any("gkeapp-0000" in args[0] for args, _ in service.logger.warning.call_args_list)

def test_run_waits_until_terminal(service, controller):
    controller.wait.side_effect = [
        finished(RolloutState.VERIFYING),
        finished(RolloutState.SUCCEEDED),
    ]
    service.run()
    assert controller.wait.call_count == 2

def test_run_rolled_back_raises(service, controller):
    controller.wait.return_value = finished(RolloutState.ROLLED_BACK, cause="ReconcileTimeout: gkeapp not ready")
    with pytest.raises(Exception, match="ended RolledBack: ReconcileTimeout"):
        service.run()

def test_keyboard_interrupt_cancels_rollout(service, controller):
    controller.wait.side_effect = [KeyboardInterrupt(), finished(RolloutState.ROLLED_BACK, cause="RolloutAborted")]
    with pytest.raises(Exception, match="ended RolledBack"):
        service.run()
    controller.cancel_rollout.assert_called_once_with("gkeapp-0001")

def test_keyboard_interrupt_during_rollback_keeps_waiting(service, controller):
    controller.wait.side_effect = [
        KeyboardInterrupt(),
        finished(RolloutState.ROLLING_BACK),
        finished(RolloutState.ROLLED_BACK, cause="ReconcileTimeout: gkeapp not ready"),
    ]
    controller.cancel_rollout.side_effect = NotCancellableError("Rollout gkeapp-0001 cannot be cancelled while RollingBack")

    with pytest.raises(Exception, match="ended RolledBack"):
        service.run()

    assert controller.wait.call_count == 3
    assert any("waiting for it to finish" in args[0] for args, _ in service.logger.warning.call_args_list)

def test_dry_run_prints_manifests(service, controller, capsys):
    service.dry_run = True
    service.run()

    out = capsys.readouterr().out
    assert "kind: Deployment" in out
    assert "kind: Service" in out
    assert "image: gcr.io/my-project/gkeapp@sha256:abc" in out
    assert "replicas: 2" in out
    assert "&" not in out
    service.create_controller.assert_not_called()
    assert any("Dry run mode" in args[0] for args, _ in service.logger.info.call_args_list)
