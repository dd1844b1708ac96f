from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from scheduler.scheduler import VitrineScheduler, _env_bool, _env_int


def test_env_bool_reads_common_spellings(monkeypatch):
    monkeypatch.setenv("VITRINE_FLAG", "yes")
    assert _env_bool("VITRINE_FLAG", default=False) is True
    monkeypatch.setenv("VITRINE_FLAG", "off")
    assert _env_bool("VITRINE_FLAG", default=True) is False
    monkeypatch.delenv("VITRINE_FLAG")
    assert _env_bool("VITRINE_FLAG", default=True) is True


def test_env_int_falls_back_and_clamps(monkeypatch):
    monkeypatch.setenv("VITRINE_MINUTES", "abc")
    assert _env_int("VITRINE_MINUTES", default=15) == 15
    monkeypatch.setenv("VITRINE_MINUTES", "0")
    assert _env_int("VITRINE_MINUTES", default=15, minimum=1) == 1


def test_expiry_sweep_job_registered(monkeypatch):
    monkeypatch.setenv("EXPIRY_SWEEP_MINUTES", "5")
    monkeypatch.delenv("ENABLE_EXPIRY_SWEEP", raising=False)

    sched = VitrineScheduler()
    sched.setup_schedules()

    job = sched.scheduler.get_job("expiry_sweep")
    assert job is not None
    assert job.trigger.interval.total_seconds() == 300


def test_expiry_sweep_can_be_disabled(monkeypatch):
    monkeypatch.setenv("ENABLE_EXPIRY_SWEEP", "false")

    sched = VitrineScheduler()
    sched.setup_schedules()

    assert sched.scheduler.get_jobs() == []
