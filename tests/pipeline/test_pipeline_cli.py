import json
import os
import time
from pathlib import Path
from unittest.mock import Mock, patch

from backoffice.models.pipeline.schema import RunStatus
from backoffice.pipeline.ledger import RunLedger
from backoffice.pipeline.utils import resolve_upload_directory

US_ZIPS_HEADER = "zip,city,state_id,state_name,county_name,lat,lng,population,density,timezone\n"


def _write_us_zips(tmp_path: Path, *lines: str) -> Path:
    csv_file = tmp_path / "uszips.csv"
    body = lines or ("10001,New York,NY,New York,New York,40.75,-73.99,20000,30000.5,America/New_York\n",)
    csv_file.write_text(US_ZIPS_HEADER + "".join(body), encoding="utf-8")
    return csv_file


def _mock_celery(task_id="celery-task-123"):
    async_result = Mock()
    async_result.id = task_id
    celery_app = Mock()
    celery_app.send_task.return_value = async_result
    return celery_app


def test_pipeline_group_prints_overview(runner):
    result = runner.invoke(args=["pipeline"])

    assert result.exit_code == 0, result.output
    assert "Allowed schemas: workspace, reference" in result.output
    assert "Integrations    : 5" in result.output
    assert "Transformations : 2" in result.output


def test_list_commands(runner):
    integrations = runner.invoke(args=["pipeline", "integrations"])
    assert integrations.exit_code == 0, integrations.output
    assert "us-zips" in integrations.output
    assert "workspace.ups_zones" in integrations.output
    assert "format=pipe" in integrations.output

    transformations = runner.invoke(args=["pipeline", "transformations"])
    assert transformations.exit_code == 0, transformations.output
    lines = transformations.output.strip().splitlines()
    assert lines[0].startswith("zip3-reference")
    assert lines[1].startswith("delivery-matrix")
    assert "depends_on=zip3-reference" in lines[1]


def test_import_queues_by_default(app, runner, tmp_path):
    csv_path = _write_us_zips(tmp_path)
    celery_app = _mock_celery()

    with patch("backoffice.pipeline.cli._resolve_celery", return_value=celery_app):
        result = runner.invoke(args=["pipeline", "import", "us-zips", "--file", str(csv_path)])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output.strip())
    assert payload == {"definition_id": "us-zips", "task_id": "celery-task-123", "status": "queued"}

    task_name = celery_app.send_task.call_args.args[0]
    kwargs = celery_app.send_task.call_args.kwargs["kwargs"]
    assert task_name == "pipeline.run_import"
    assert kwargs["display_name"] == "uszips.csv"
    assert kwargs["triggered_by"] == "cli"
    staged = Path(kwargs["file_path"])
    assert staged.parent == resolve_upload_directory(app)
    assert staged.read_text(encoding="utf-8") == csv_path.read_text(encoding="utf-8")


def test_import_enqueue_failure_removes_staged_file(app, runner, tmp_path):
    csv_path = _write_us_zips(tmp_path)
    celery_app = Mock()
    celery_app.send_task.side_effect = RuntimeError("broker unavailable")

    with patch("backoffice.pipeline.cli._resolve_celery", return_value=celery_app):
        result = runner.invoke(args=["pipeline", "import", "us-zips", "--file", str(csv_path)])

    assert result.exit_code != 0
    assert "Failed to enqueue import for us-zips" in result.output
    assert list(resolve_upload_directory(app).iterdir()) == []


def test_import_inline_json(runner, tmp_path, count_rows):
    csv_path = _write_us_zips(tmp_path)

    with patch("backoffice.pipeline.cli._resolve_celery") as mock_resolve:
        result = runner.invoke(args=["pipeline", "import", "us-zips", "--file", str(csv_path), "--inline", "--json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "succeeded"
    assert payload["rows_processed"] == 1
    assert count_rows("workspace.us_zips") == 1
    mock_resolve.assert_not_called()

    run = RunLedger().get_run(payload["run_id"])
    assert run.triggered_by == "cli"
    assert run.filename == "uszips.csv"


def test_import_inline_failure_exits_nonzero(runner, tmp_path, count_rows):
    csv_path = _write_us_zips(tmp_path, "1000A,Nowhere,NY,New York,Kings,1,1,1,1,UTC\n")

    result = runner.invoke(args=["pipeline", "import", "us-zips", "--file", str(csv_path), "--inline"])

    assert result.exit_code == 1
    assert "finished with status failed" in result.output
    assert "row 1 [zip]: ZIP code must be 5 digits" in result.output
    assert count_rows("workspace.us_zips") == 0


def test_import_unknown_definition(runner, tmp_path):
    csv_path = _write_us_zips(tmp_path)
    result = runner.invoke(args=["pipeline", "import", "carrier-rates", "--file", str(csv_path), "--inline"])
    assert result.exit_code != 0
    assert "Unknown integration 'carrier-rates'" in result.output


def test_transform_queues_by_default(runner):
    celery_app = _mock_celery("task-9")

    with patch("backoffice.pipeline.cli._resolve_celery", return_value=celery_app):
        result = runner.invoke(args=["pipeline", "transform", "zip3-reference"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {"definition_id": "zip3-reference", "task_id": "task-9", "status": "queued"}
    celery_app.send_task.assert_called_once_with(
        "pipeline.run_transformation",
        kwargs={"definition_id": "zip3-reference", "triggered_by": "cli"},
    )


def test_transform_inline(runner, tmp_path):
    csv_path = _write_us_zips(tmp_path)
    imported = runner.invoke(args=["pipeline", "import", "us-zips", "--file", str(csv_path), "--inline"])
    assert imported.exit_code == 0, imported.output

    result = runner.invoke(args=["pipeline", "transform", "zip3-reference", "--inline", "--json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "succeeded"
    assert payload["rows_processed"] == 1


def test_transform_all_inline_reports_each_definition(runner):
    result = runner.invoke(args=["pipeline", "transform-all", "--inline"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert list(payload) == ["delivery-matrix", "zip3-reference"]
    assert all(item["status"] == "succeeded" for item in payload.values())


def test_transform_all_queued_with_selection(runner):
    celery_app = _mock_celery()

    with patch("backoffice.pipeline.cli._resolve_celery", return_value=celery_app):
        result = runner.invoke(args=["pipeline", "transform-all", "delivery-matrix"])

    assert result.exit_code == 0, result.output
    kwargs = celery_app.send_task.call_args.kwargs["kwargs"]
    assert kwargs == {"definition_ids": ["delivery-matrix"], "triggered_by": "cli"}


def test_transform_all_unknown_definition(runner):
    result = runner.invoke(args=["pipeline", "transform-all", "nope", "--inline"])
    assert result.exit_code != 0
    assert "Unknown transformations requested: nope." in result.output


def test_runs_listing_and_stats(runner, tmp_path):
    csv_path = _write_us_zips(tmp_path)
    runner.invoke(args=["pipeline", "import", "us-zips", "--file", str(csv_path), "--inline"])
    runner.invoke(args=["pipeline", "transform", "delivery-matrix", "--inline"])

    listing = runner.invoke(args=["pipeline", "runs", "--kind", "integration"])
    assert listing.exit_code == 0, listing.output
    payload = json.loads(listing.output)
    assert payload["total"] == 1
    assert payload["items"][0]["definition_id"] == "us-zips"
    assert payload["items"][0]["status"] == RunStatus.SUCCEEDED.value

    stats = runner.invoke(args=["pipeline", "runs", "--stats"])
    assert stats.exit_code == 0, stats.output
    stats_payload = json.loads(stats.output)
    assert stats_payload["total"] == 2
    assert stats_payload["kinds"] == {"integration": 1, "transformation": 1}


def test_runs_rejects_bad_filters(runner):
    result = runner.invoke(args=["pipeline", "runs", "--sort", "rows"])
    assert result.exit_code != 0
    assert "Unsupported sort field 'rows'" in result.output


def test_cleanup_uploads_removes_stale_files(app, runner):
    upload_dir = resolve_upload_directory(app)
    stale = upload_dir / "stale.csv"
    fresh = upload_dir / "fresh.csv"
    stale.write_text("zip\n", encoding="utf-8")
    fresh.write_text("zip\n", encoding="utf-8")
    old = time.time() - 5 * 24 * 3600
    os.utime(stale, (old, old))

    result = runner.invoke(args=["pipeline", "cleanup-uploads", "--max-age-hours", "24"])

    assert result.exit_code == 0, result.output
    assert "Removed 1 upload file(s)" in result.output
    assert not stale.exists()
    assert fresh.exists()


def test_disabled_pipeline_group(make_app):
    disabled_app = make_app("disabled", PIPELINE_ENABLED=False)

    result = disabled_app.test_cli_runner().invoke(args=["pipeline"])

    assert result.exit_code != 0
    assert "Pipeline commands are unavailable because PIPELINE_ENABLED=false." in result.output
    assert disabled_app.extensions["pipeline"]["enabled"] is False
