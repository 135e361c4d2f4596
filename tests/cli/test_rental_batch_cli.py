"""
Tests for the rental-batch entry point: argument handling, exit status
and the job row each invocation leaves behind.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from rental_kernel.db.engine import Database
from rental_kernel.domain.clock import DeterministicClock

from rental_batch import cli
from rental_billing.domain.types import JobStatus, JobType, SeriesObservation
from rental_billing.models import (
    BillingJobModel,
    InflationIndexModel,
    InvoiceModel,
    LeaseModel,
    OwnerModel,
)
from rental_billing.services import JobLedger, job_metrics

TODAY = date(2024, 3, 1)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    for variable in (
        "RENTAL_BILLING_CONFIG", "DATABASE_URL", "LOG_LEVEL", "LOG_FILE",
        "PROMETHEUS_PUSHGATEWAY_URL", "PROMETHEUS_PUSHGATEWAY_JOB",
        "PROMETHEUS_PUSHGATEWAY_INSTANCE",
    ):
        monkeypatch.delenv(variable, raising=False)


@pytest.fixture
def db_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'batch.db'}"
    database = Database.from_url(url)
    database.create_tables()
    database.dispose()
    return url


@pytest.fixture
def db(db_url):
    database = Database.from_url(db_url)
    yield database
    database.dispose()


def run(db_url, *argv):
    return cli.main(
        ["--database-url", db_url, *argv],
        clock=DeterministicClock.on(TODAY),
    )


def jobs(database, job_type: JobType) -> list[BillingJobModel]:
    with database.session_scope() as session:
        rows = session.execute(
            select(BillingJobModel).where(BillingJobModel.job_type == job_type.value)
        ).scalars().all()
        session.expunge_all()
        return rows


def seed_lease(database) -> None:
    with database.session_scope() as session:
        owner = OwnerModel(first_name="Ana", last_name="García", email="ana@example.com")
        session.add(owner)
        session.flush()
        session.add(LeaseModel(
            owner_id=owner.id,
            status="active",
            start_date=date(2023, 1, 1),
            end_date=date(2026, 12, 31),
            rent_amount=Decimal("100000"),
            currency="ARS",
            payment_frequency="monthly",
            tenant_name="Juan Pérez",
            property_label="Av. Corrientes 1234, 5B",
        ))


class TestParser:
    def test_command_is_required(self):
        with pytest.raises(SystemExit) as excinfo:
            cli.build_parser().parse_args([])
        assert excinfo.value.code == 2

    def test_reports_requires_owner(self):
        with pytest.raises(SystemExit) as excinfo:
            cli.build_parser().parse_args(["reports", "--type", "monthly"])
        assert excinfo.value.code == 2

    def test_rejects_bad_period(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["process-settlements", "--period", "2024-13"])

    def test_rate_is_a_percentage(self):
        args = cli.build_parser().parse_args(["late-fees", "--rate", "3"])
        assert args.rate == Decimal("3")

    def test_every_command_has_a_job_type(self):
        parser = cli.build_parser()
        subparsers = next(
            a for a in parser._actions if a.dest == "command"
        )
        assert set(subparsers.choices) == set(cli.COMMANDS) | {"reconcile-jobs"}

    def test_reconcile_type_is_a_command_name(self):
        args = cli.build_parser().parse_args(["reconcile-jobs", "--type", "late-fees"])
        assert args.type == "late-fees"
        assert args.older_than_minutes == 60

    def test_reconcile_rejects_negative_age(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(
                ["reconcile-jobs", "--type", "overdue", "--older-than-minutes", "-5"]
            )


class TestExitStatus:
    def test_billing_with_nothing_due(self, db_url, db, capsys):
        assert run(db_url, "billing") == 0
        assert "0 invoices" in capsys.readouterr().out

        [job] = jobs(db, JobType.BILLING)
        assert job.status == JobStatus.COMPLETED.value
        assert job.records_total == 0

    def test_billing_issues_invoice(self, db_url, db):
        seed_lease(db)

        assert run(db_url, "billing") == 0

        with db.session_scope() as session:
            invoices = session.execute(select(InvoiceModel)).scalars().all()
            assert [i.invoice_number for i in invoices] == ["2024-000001"]
            lease = session.execute(select(LeaseModel)).scalars().one()
            assert lease.next_billing_date == date(2024, 4, 1)
        [job] = jobs(db, JobType.BILLING)
        assert job.records_processed == 1

    def test_dry_run_writes_nothing(self, db_url, db):
        seed_lease(db)

        assert run(db_url, "billing", "--dry-run") == 0

        with db.session_scope() as session:
            assert session.execute(select(InvoiceModel)).scalars().all() == []
        [job] = jobs(db, JobType.BILLING)
        assert job.dry_run is True

    def test_running_job_blocks_second_run(self, db_url, db, capsys):
        JobLedger(db, DeterministicClock.on(TODAY)).start_job(JobType.OVERDUE)

        assert run(db_url, "overdue") == 1
        assert "already has a running job" in capsys.readouterr().err
        assert len(jobs(db, JobType.OVERDUE)) == 1

    def test_other_job_types_are_not_blocked(self, db_url, db):
        JobLedger(db, DeterministicClock.on(TODAY)).start_job(JobType.OVERDUE)
        assert run(db_url, "late-fees", "--dry-run") == 0

    def test_missing_config_file(self, db_url, tmp_path, capsys):
        assert run(db_url, "--config", str(tmp_path / "missing.yaml"), "overdue") == 1
        assert "ERROR" in capsys.readouterr().err

    def test_invalid_config_value(self, db_url, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("billing:\n  late_fee_rate: '4'\n", encoding="utf-8")
        assert run(db_url, "--config", str(path), "overdue") == 1

    def test_handler_failure_marks_job_failed(self, db_url, db, monkeypatch):
        def explode(ctx):
            raise RuntimeError("disk full")

        monkeypatch.setitem(
            cli.COMMANDS, "overdue",
            cli.Command(JobType.OVERDUE, explode, lambda a: {}),
        )

        assert run(db_url, "overdue") == 1

        [job] = jobs(db, JobType.OVERDUE)
        assert job.status == JobStatus.FAILED.value
        assert job.error_message == "disk full"


class TestReconcileJobs:
    def test_stale_row_blocks_until_reconciled(self, db_url, db, capsys):
        JobLedger(db, DeterministicClock.on(date(2024, 2, 29))).start_job(JobType.OVERDUE)

        assert run(db_url, "overdue") == 1
        assert "already has a running job" in capsys.readouterr().err

        assert run(
            db_url, "reconcile-jobs", "--type", "overdue", "--older-than-minutes", "60",
        ) == 0
        assert "1 stale overdue jobs marked failed" in capsys.readouterr().out
        [stale] = jobs(db, JobType.OVERDUE)
        assert stale.status == JobStatus.FAILED.value
        assert stale.error_message == "abandoned"

        assert run(db_url, "overdue") == 0
        statuses = sorted(j.status for j in jobs(db, JobType.OVERDUE))
        assert statuses == [JobStatus.COMPLETED.value, JobStatus.FAILED.value]

    def test_recent_row_is_left_running(self, db_url, db, capsys):
        JobLedger(db, DeterministicClock.on(TODAY, hour=11)).start_job(JobType.OVERDUE)

        assert run(
            db_url, "reconcile-jobs", "--type", "overdue", "--older-than-minutes", "120",
        ) == 0
        assert "0 stale overdue jobs" in capsys.readouterr().out
        [job] = jobs(db, JobType.OVERDUE)
        assert job.status == JobStatus.RUNNING.value
        assert run(db_url, "overdue") == 1

    def test_reconcile_does_not_record_a_job(self, db_url, db):
        assert run(db_url, "reconcile-jobs", "--type", "billing") == 0
        with db.session_scope() as session:
            assert session.execute(select(BillingJobModel)).scalars().all() == []

    def test_reconcile_only_touches_its_type(self, db_url, db):
        old = DeterministicClock.on(date(2024, 2, 29))
        JobLedger(db, old).start_job(JobType.OVERDUE)
        JobLedger(db, old).start_job(JobType.BILLING)

        assert run(db_url, "reconcile-jobs", "--type", "billing") == 0

        [overdue] = jobs(db, JobType.OVERDUE)
        assert overdue.status == JobStatus.RUNNING.value
        [billing] = jobs(db, JobType.BILLING)
        assert billing.status == JobStatus.FAILED.value


class TestMetricsPush:
    def test_run_pushes_when_gateway_configured(self, db_url, db, monkeypatch):
        pushes = []
        monkeypatch.setattr(
            job_metrics, "push_to_gateway",
            lambda gateway, **kwargs: pushes.append((gateway, kwargs)),
        )
        monkeypatch.setenv("PROMETHEUS_PUSHGATEWAY_URL", "http://pushgateway:9091")
        monkeypatch.setenv("PROMETHEUS_PUSHGATEWAY_INSTANCE", "batch-1")

        assert run(db_url, "overdue") == 0

        [(gateway, kwargs)] = pushes
        assert gateway == "http://pushgateway:9091"
        assert kwargs["job"] == "rent_batch"
        assert kwargs["grouping_key"] == {"instance": "batch-1", "command": "overdue"}
        assert kwargs["registry"].get_sample_value(
            "batch_job_runs_total", {"job": "overdue", "status": "completed"},
        ) == 1.0

    def test_no_gateway_no_push(self, db_url, db, monkeypatch):
        pushes = []
        monkeypatch.setattr(
            job_metrics, "push_to_gateway", lambda *a, **k: pushes.append(a),
        )

        assert run(db_url, "overdue") == 0
        assert pushes == []


class FakeClient:
    source_name = "fake"
    observations = [SeriesObservation(date(2024, 2, 1), Decimal("12.5"))]

    def __init__(self, *args, **kwargs):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return None

    def fetch_icl(self, start, end):
        return list(self.observations)

    fetch_igpm = fetch_ipc = fetch_icl


class BrokenBcb(FakeClient):
    source_name = "BCB"

    def fetch_igpm(self, start, end):
        raise RuntimeError("BCB unavailable")


class TestSyncIndices:
    @pytest.fixture(autouse=True)
    def _fake_sources(self, monkeypatch):
        monkeypatch.setattr(cli, "BcraClient", FakeClient)
        monkeypatch.setattr(cli, "BcbClient", BrokenBcb)
        monkeypatch.setattr(cli, "DatosArClient", FakeClient)

    def test_single_index(self, db_url, db, capsys):
        assert run(db_url, "sync-indices", "--index", "icl") == 0
        assert "icl: 1 inserted" in capsys.readouterr().out

        with db.session_scope() as session:
            [row] = session.execute(select(InflationIndexModel)).scalars().all()
            assert row.index_type == "icl"
            assert row.value == Decimal("12.5")

    def test_all_records_partial_failure(self, db_url, db):
        assert run(db_url, "sync-indices") == 0

        [job] = jobs(db, JobType.SYNC_INDICES)
        assert job.status == JobStatus.PARTIAL_FAILURE.value
        assert job.records_failed == 1
        assert job.records_processed == 2
        assert job.error_log[0]["record_id"] == "igpm"
