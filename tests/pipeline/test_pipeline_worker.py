import json
from typing import Any, Dict

import pytest
from flask import Flask

from backoffice.pipeline import get_celery_app, init_pipeline
from backoffice.pipeline.celery_app import DEFAULT_QUEUE_NAME
from backoffice.pipeline.errors import UnknownDefinitionError
from backoffice.pipeline.ledger import RunLedger
from backoffice.pipeline.utils import stage_upload

EAGER = {"task_always_eager": True, "task_eager_propagates": True}


def build_pipeline_app(tmp_path, **overrides) -> Flask:
    """
    Construct a minimal Flask app with the pipeline enabled for worker tests.
    """
    instance_dir = tmp_path / "worker-instance"
    app = Flask(__name__, instance_path=str(instance_dir))
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        PIPELINE_ENABLED=True,
        PIPELINE_ALLOWED_SCHEMAS=("workspace", "reference"),
        CELERY_SQLITE_PATH=str(instance_dir / "celery.sqlite"),
    )
    app.config.update(overrides)
    init_pipeline(app)
    return app


def test_celery_defaults_to_sqlite_transport(tmp_path):
    sqlite_path = tmp_path / "queues" / "custom.sqlite"
    app = build_pipeline_app(tmp_path, CELERY_SQLITE_PATH=str(sqlite_path), CELERY_CONFIG=EAGER)

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url == f"sqla+sqlite:///{sqlite_path.as_posix()}"
    assert celery_app.conf.result_backend == f"db+sqlite:///{sqlite_path.as_posix()}"
    assert sqlite_path.parent.is_dir()
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert celery_app.conf.task_acks_late is True
    assert "pipeline.run_import" in celery_app.tasks
    assert "pipeline.run_all_transformations" in celery_app.tasks


def test_explicit_broker_and_time_limits(tmp_path):
    app = build_pipeline_app(
        tmp_path,
        CELERY_BROKER_URL="redis://localhost:6379/0",
        CELERY_RESULT_BACKEND="redis://localhost:6379/1",
        PIPELINE_TASK_TIME_LIMIT=120,
        PIPELINE_TASK_SOFT_TIME_LIMIT=90,
    )

    celery_app = get_celery_app(app)
    assert celery_app.conf.broker_url == "redis://localhost:6379/0"
    assert celery_app.conf.result_backend == "redis://localhost:6379/1"
    assert celery_app.conf.task_time_limit == 120
    assert celery_app.conf.task_soft_time_limit == 90


def test_celery_config_accepts_json_string(tmp_path):
    app = build_pipeline_app(tmp_path, CELERY_CONFIG='{"task_always_eager": true, "worker_concurrency": 3}')
    celery_app = get_celery_app(app)
    assert celery_app.conf.task_always_eager is True
    assert celery_app.conf.worker_concurrency == 3


def test_invalid_celery_config_is_ignored(tmp_path):
    app = build_pipeline_app(tmp_path, CELERY_CONFIG="{not json")
    assert get_celery_app(app).conf.task_always_eager is False


def test_relative_sqlite_path_lives_in_instance_folder(tmp_path):
    app = build_pipeline_app(tmp_path, CELERY_SQLITE_PATH="queues/relative.sqlite", CELERY_BROKER_URL="redis://q")

    celery_app = get_celery_app(app)
    expected = (tmp_path / "worker-instance" / "queues" / "relative.sqlite").as_posix()
    assert celery_app.conf.broker_url == "redis://q"
    assert celery_app.conf.result_backend == f"db+sqlite:///{expected}"


def test_disabled_pipeline_has_no_celery_app(tmp_path):
    app = build_pipeline_app(tmp_path, PIPELINE_ENABLED=False)
    assert get_celery_app(app) is None
    assert get_celery_app(Flask("bare")) is None


def test_worker_ping_cli(tmp_path):
    app = build_pipeline_app(tmp_path, PIPELINE_WORKER_ENABLED=True, CELERY_CONFIG=EAGER)

    runner = app.test_cli_runner()
    result = runner.invoke(args=["pipeline", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(tmp_path, monkeypatch):
    app = build_pipeline_app(tmp_path, PIPELINE_WORKER_ENABLED=True, CELERY_CONFIG=EAGER)
    celery_app = get_celery_app(app)
    assert celery_app is not None

    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    runner = app.test_cli_runner()
    result = runner.invoke(
        args=[
            "pipeline",
            "worker",
            "run",
            "--loglevel",
            "debug",
            "--concurrency",
            "2",
            "--pool",
            "solo",
            "--queues",
            "imports",
        ]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        "imports",
        "--concurrency",
        "2",
        "--pool",
        "solo",
    ]
    assert app.extensions["pipeline"]["worker_enabled"] is True


def test_worker_group_warns_when_disabled(tmp_path, monkeypatch):
    app = build_pipeline_app(tmp_path, CELERY_CONFIG=EAGER)
    monkeypatch.setattr(get_celery_app(app), "worker_main", lambda argv=None: None)

    result = app.test_cli_runner().invoke(args=["pipeline", "worker", "run"])

    assert result.exit_code == 0, result.output
    assert "PIPELINE_WORKER_ENABLED is false" in result.output


def _write_population_csv(tmp_path):
    source = tmp_path / "zips.csv"
    source.write_text(
        "zip,city,state_id,state_name,county_name,lat,lng,population,density,timezone\n"
        "10001,New York,NY,New York,New York,40.75,-73.99,20000,30000.5,America/New_York\n"
        "90210,Beverly Hills,CA,California,Los Angeles,34.10,-118.41,20000,2000.0,America/Los_Angeles\n",
        encoding="utf-8",
    )
    return source


def test_run_import_task_loads_and_removes_staged_file(app, tmp_path, count_rows):
    staged = stage_upload(_write_population_csv(tmp_path), app)
    task = get_celery_app(app).tasks["pipeline.run_import"]

    payload = task.apply(
        kwargs={
            "definition_id": "us-zips",
            "file_path": str(staged),
            "triggered_by": "scheduler",
            "display_name": "zips.csv",
        }
    ).get()

    assert payload["status"] == "succeeded"
    assert payload["rows_processed"] == 2
    assert count_rows("workspace.us_zips") == 2
    assert not staged.exists()

    run = RunLedger().get_run(payload["run_id"])
    assert run.filename == "zips.csv"
    assert run.triggered_by == "scheduler"


def test_run_import_task_can_keep_file(app, tmp_path):
    staged = stage_upload(_write_population_csv(tmp_path), app)
    task = get_celery_app(app).tasks["pipeline.run_import"]

    payload = task.apply(kwargs={"definition_id": "us-zips", "file_path": str(staged), "keep_file": True}).get()

    assert payload["status"] == "succeeded"
    assert staged.exists()


def test_run_import_task_errors_propagate(app, tmp_path):
    task = get_celery_app(app).tasks["pipeline.run_import"]

    with pytest.raises(FileNotFoundError):
        task.apply(kwargs={"definition_id": "us-zips", "file_path": str(tmp_path / "missing.csv")})
    with pytest.raises(UnknownDefinitionError):
        task.apply(kwargs={"definition_id": "nope", "file_path": str(tmp_path / "missing.csv")})


def test_transformation_tasks(app, tmp_path, count_rows):
    celery_app = get_celery_app(app)
    staged = stage_upload(_write_population_csv(tmp_path), app)
    celery_app.tasks["pipeline.run_import"].apply(kwargs={"definition_id": "us-zips", "file_path": str(staged)}).get()

    single = celery_app.tasks["pipeline.run_transformation"].apply(kwargs={"definition_id": "zip3-reference"}).get()
    assert single["status"] == "succeeded"
    assert single["rows_processed"] == 2
    assert count_rows("reference.zip3_reference") == 2

    batch = celery_app.tasks["pipeline.run_all_transformations"].apply(kwargs={"triggered_by": "nightly"}).get()
    assert list(batch) == ["zip3-reference", "delivery-matrix"]
    assert all(result["status"] == "succeeded" for result in batch.values())
    assert RunLedger().get_run(batch["delivery-matrix"]["run_id"]).triggered_by == "nightly"
