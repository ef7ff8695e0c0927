import csv
import gzip
import io
import json
import os
import tempfile
import unittest
from datetime import datetime
from typing import List
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

from support import BASE_TIME, SECRET, seed_everything, seed_people, seed_services

from export_service import create_app
from export_service.config import EXPORT_DOMAINS, EXPORT_FORMATS, Settings
from export_service.db import session_scope
from export_service.models import AutomotiveService, ExportJob, ExportLog, utc_now
from export_service.services.adapters import ADAPTERS
from export_service.services.tokens import sign_token
from export_service.session_client import SessionUser


class ExportAppTestCase(unittest.TestCase):
    def setUp(self):
        workdir = tempfile.TemporaryDirectory()
        self.addCleanup(workdir.cleanup)
        database_url = f"sqlite:///{os.path.join(workdir.name, 'exports.db')}"
        self.app = create_app(Settings(database_url=database_url, export_secret=SECRET))
        self.addCleanup(self.app.extensions["export_engine"].dispose)
        self.client = self.app.test_client()
        self.sessions = self.app.extensions["export_sessions"]
        patcher = patch("export_service.routes.export.lookup_session", return_value=None)
        self.lookup = patcher.start()
        self.addCleanup(patcher.stop)
        jobs_patcher = patch("export_service.routes.jobs.lookup_session", new=self.lookup)
        jobs_patcher.start()
        self.addCleanup(jobs_patcher.stop)

    def tearDown(self):
        self.app.extensions["audit_sink"].shutdown()

    def login(self, role, user_id="user-1"):
        self.lookup.return_value = SessionUser(id=user_id, role=role)

    def token_for(self, subject, expires_at=None):
        payload = {"uid": subject}
        if expires_at is not None:
            payload["exp"] = expires_at
        return sign_token(payload, SECRET)

    @staticmethod
    def csv_rows(text) -> List[List[str]]:
        return list(csv.reader(io.StringIO(text)))


class ExportAuthorizationTest(ExportAppTestCase):
    def test_missing_session_and_token_returns_401_for_every_pair(self):
        for index, (domain, export_format) in enumerate(
            (d, f) for d in EXPORT_DOMAINS for f in EXPORT_FORMATS
        ):
            with self.subTest(domain=domain, format=export_format):
                response = self.client.get(
                    f"/api/export?type={domain}&format={export_format}",
                    headers={"X-Forwarded-For": f"10.0.0.{index}"},
                )
                self.assertEqual(response.status_code, 401)

    def test_role_without_domain_returns_403_for_every_pair(self):
        for index, (domain, export_format) in enumerate(
            (d, f) for d in EXPORT_DOMAINS for f in EXPORT_FORMATS
        ):
            with self.subTest(domain=domain, format=export_format):
                self.login("CUSTOMER", user_id=f"customer-{index}")
                response = self.client.get(
                    f"/api/export?type={domain}&format={export_format}"
                )
                self.assertEqual(response.status_code, 403)

    def test_valid_token_grants_every_pair_without_session(self):
        seed_everything(self.sessions)
        for index, (domain, export_format) in enumerate(
            (d, f) for d in EXPORT_DOMAINS for f in EXPORT_FORMATS
        ):
            with self.subTest(domain=domain, format=export_format):
                token = self.token_for(f"robot-{index}")
                response = self.client.get(
                    "/api/export",
                    query_string={"type": domain, "format": export_format, "token": token},
                )
                self.assertEqual(response.status_code, 200)
                expected_type = "text/csv" if export_format == "csv" else "application/pdf"
                self.assertTrue(response.headers["Content-Type"].startswith(expected_type))

    def test_token_bypasses_role_policy(self):
        self.login("CUSTOMER")
        token = self.token_for("robot")
        response = self.client.get(
            "/api/export", query_string={"type": "staff", "token": token}
        )
        self.assertEqual(response.status_code, 200)

    def test_staff_export_for_customer_without_token_is_forbidden(self):
        self.login("CUSTOMER")
        response = self.client.get("/api/export?type=staff")
        self.assertEqual(response.status_code, 403)
        self.assertIn("Forbidden", response.get_json()["error"])

    def test_hr_role_limited_to_staff(self):
        self.login("HR")
        self.assertEqual(self.client.get("/api/export?type=staff").status_code, 200)
        self.assertEqual(self.client.get("/api/export?type=invoices").status_code, 403)

    def test_expired_token_falls_back_to_session(self):
        now_ms = 1_700_000_000_000
        token = self.token_for("robot", expires_at=now_ms - 1)
        with patch("export_service.services.tokens._now_ms", return_value=now_ms):
            response = self.client.get(
                "/api/export", query_string={"type": "staff", "token": token}
            )
            self.assertEqual(response.status_code, 401)

            self.login("ADMIN")
            response = self.client.get(
                "/api/export", query_string={"type": "staff", "token": token}
            )
            self.assertEqual(response.status_code, 200)

            self.login("CUSTOMER", user_id="someone-else")
            response = self.client.get(
                "/api/export", query_string={"type": "staff", "token": token}
            )
            self.assertEqual(response.status_code, 403)

    def test_tampered_token_is_rejected(self):
        token = self.token_for("robot")
        payload, signature = token.split(".")
        forged = f"{payload}.{'0' * len(signature)}"
        response = self.client.get(
            "/api/export", query_string={"type": "services", "token": forged}
        )
        self.assertEqual(response.status_code, 401)


class ExportRateLimitTest(ExportAppTestCase):
    def test_twenty_first_export_in_window_is_rejected(self):
        self.login("ADMIN", user_id="busy-admin")
        for _ in range(20):
            response = self.client.get("/api/export?type=services")
            self.assertEqual(response.status_code, 200)
        response = self.client.get("/api/export?type=services")
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.headers["Retry-After"], "60")

    def test_identities_are_counted_separately(self):
        self.login("ADMIN", user_id="first")
        for _ in range(20):
            self.client.get("/api/export?type=services")
        self.assertEqual(self.client.get("/api/export?type=services").status_code, 429)
        self.login("ADMIN", user_id="second")
        self.assertEqual(self.client.get("/api/export?type=services").status_code, 200)

    def test_rate_limit_applies_before_authentication(self):
        for _ in range(20):
            self.assertEqual(self.client.get("/api/export").status_code, 401)
        self.assertEqual(self.client.get("/api/export").status_code, 429)


class ExportParameterTest(ExportAppTestCase):
    def setUp(self):
        super().setUp()
        self.login("ADMIN")

    def test_unknown_type_returns_400(self):
        response = self.client.get("/api/export?type=spaceships")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json(), {"error": "Unsupported type"})

    def test_unknown_format_returns_400(self):
        response = self.client.get("/api/export?type=services&format=xlsx")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json(), {"error": "Unsupported format"})

    def test_malformed_date_returns_400(self):
        response = self.client.get("/api/export?type=services&startDate=yesterday")
        self.assertEqual(response.status_code, 400)

    def test_date_with_trailing_text_returns_400(self):
        response = self.client.get("/api/export?type=services&endDate=2024-03-05garbage")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.get_json(), {"error": "startDate and endDate must be ISO dates"}
        )

    def test_full_timestamp_dates_are_accepted(self):
        response = self.client.get(
            "/api/export?type=services&startDate=2024-03-05T08:00:00Z"
            "&endDate=2024-03-06T00:00:00"
        )
        self.assertEqual(response.status_code, 200)

    def test_unknown_currency_falls_back_to_default(self):
        seed_everything(self.sessions)
        for currency in ("12", "ZZZ", "US$", "USDOLLARS"):
            with self.subTest(currency=currency):
                response = self.client.get(
                    "/api/export",
                    query_string={
                        "type": "invoices",
                        "columns": "Number,Total",
                        "currency": currency,
                    },
                )
                self.assertEqual(response.status_code, 200)
                rows = self.csv_rows(response.get_data(as_text=True))
                self.assertEqual(rows[1], ["INV-0001", "$100.00"])

    def test_known_currency_is_used(self):
        seed_everything(self.sessions)
        response = self.client.get(
            "/api/export?type=invoices&columns=Number,Total&currency=eur"
        )
        rows = self.csv_rows(response.get_data(as_text=True))
        self.assertEqual(rows[1], ["INV-0001", "€100.00"])

    def test_invalid_parameters_touch_no_data(self):
        with patch.object(ADAPTERS["services"], "fetch_buffered") as fetch:
            self.client.get("/api/export?type=services&format=xlsx")
        fetch.assert_not_called()


class BufferedCsvExportTest(ExportAppTestCase):
    def setUp(self):
        super().setUp()
        self.login("ADMIN")

    def test_invoices_csv_starts_with_canonical_header(self):
        seed_everything(self.sessions)
        response = self.client.get("/api/export?type=invoices&format=csv")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["Content-Type"].startswith("text/csv"))
        self.assertEqual(
            response.headers["Content-Disposition"],
            "attachment; filename=invoices-export.csv",
        )
        text = response.get_data(as_text=True)
        self.assertEqual(text.split("\n")[0], "Number,Customer,Status,Total,Paid,DueDate")
        rows = self.csv_rows(text)
        self.assertEqual(rows[1][:3], ["INV-0001", 'Efua "Effie" Owusu', "UNPAID"])
        self.assertEqual(rows[1][3], "$100.00")
        self.assertNotIn("X-Export-Skipped", response.headers)

    def test_column_subset_keeps_canonical_order(self):
        seed_everything(self.sessions)
        response = self.client.get(
            "/api/export?type=invoices&columns=Total,Number,Bogus"
        )
        rows = self.csv_rows(response.get_data(as_text=True))
        self.assertEqual(rows[0], ["Number", "Total"])
        self.assertEqual(rows[1], ["INV-0001", "$100.00"])

    def test_end_date_includes_last_millisecond_of_day(self):
        with session_scope(self.sessions) as session:
            customer = seed_people(session)["customer"]
            inside = AutomotiveService(
                service_type="BRAKES",
                status="DONE",
                customer=customer,
                created_at=datetime(2024, 3, 5, 23, 59, 59, 999000),
            )
            outside = AutomotiveService(
                service_type="BRAKES",
                status="DONE",
                customer=customer,
                created_at=datetime(2024, 3, 6, 0, 0, 0),
            )
            session.add_all([inside, outside])
            session.flush()
            inside_id = inside.id

        response = self.client.get(
            "/api/export?type=services&columns=ID&startDate=2024-03-05&endDate=2024-03-05"
        )
        rows = self.csv_rows(response.get_data(as_text=True))
        self.assertEqual(rows, [["ID"], [str(inside_id)]])

    def test_normalization_failure_blanks_row_and_sets_header(self):
        with session_scope(self.sessions) as session:
            customer = seed_people(session)["customer"]
            ids = seed_services(session, customer, 3)
        adapter = ADAPTERS["services"]
        real_fields = type(adapter).fields

        def flaky_fields(self_, record, fmt):
            if record.id == ids[1]:
                raise ValueError("corrupt record")
            return real_fields(self_, record, fmt)

        with patch.object(type(adapter), "fields", flaky_fields):
            response = self.client.get("/api/export?type=services")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["X-Export-Skipped"], "1")
        rows = self.csv_rows(response.get_data(as_text=True))
        self.assertEqual(len(rows), 4)
        self.assertEqual(rows[2], ["", "", "", "", ""])
        self.assertEqual(rows[3][0], str(ids[2]))

    def test_unexpected_failure_returns_generic_500(self):
        with patch.object(
            ADAPTERS["services"], "fetch_buffered", side_effect=RuntimeError("db password wrong")
        ):
            response = self.client.get("/api/export?type=services")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {"error": "Internal error"})


class StreamedCsvExportTest(ExportAppTestCase):
    def setUp(self):
        super().setUp()
        self.login("ADMIN")
        with session_scope(self.sessions) as session:
            customer = seed_people(session)["customer"]
            self.ids = seed_services(session, customer, 5)

    def test_streamed_csv_matches_buffered_rows(self):
        streamed = self.client.get("/api/export?type=services&stream=true")
        buffered = self.client.get("/api/export?type=services")
        self.assertEqual(streamed.status_code, 200)
        self.assertNotIn("Content-Encoding", streamed.headers)
        self.assertEqual(
            self.csv_rows(streamed.get_data(as_text=True)),
            self.csv_rows(buffered.get_data(as_text=True)),
        )

    def test_streamed_csv_applies_column_subset(self):
        response = self.client.get("/api/export?type=services&stream=true&columns=Status,ID")
        rows = self.csv_rows(response.get_data(as_text=True))
        self.assertEqual(rows[0], ["ID", "Status"])
        self.assertEqual([row[0] for row in rows[1:]], [str(i) for i in self.ids])

    def test_gzip_is_applied_when_accepted(self):
        plain = self.client.get("/api/export?type=services&stream=true")
        compressed = self.client.get(
            "/api/export?type=services&stream=true",
            headers={"Accept-Encoding": "gzip, deflate"},
        )
        self.assertEqual(compressed.headers["Content-Encoding"], "gzip")
        self.assertEqual(gzip.decompress(compressed.get_data()), plain.get_data())

    def test_gzip_requires_streaming(self):
        response = self.client.get(
            "/api/export?type=services", headers={"Accept-Encoding": "gzip"}
        )
        self.assertNotIn("Content-Encoding", response.headers)


class PdfExportTest(ExportAppTestCase):
    def test_pdf_export_is_buffered_even_when_streaming_requested(self):
        self.login("ADMIN")
        seed_everything(self.sessions)
        response = self.client.get(
            "/api/export?type=payments&format=pdf&stream=true",
            headers={"Accept-Encoding": "gzip"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["Content-Type"], "application/pdf")
        self.assertEqual(
            response.headers["Content-Disposition"],
            "attachment; filename=payments-export.pdf",
        )
        self.assertNotIn("Content-Encoding", response.headers)
        self.assertTrue(response.get_data().startswith(b"%PDF"))


class ExportAuditTest(ExportAppTestCase):
    def test_successful_export_is_logged(self):
        self.login("ADMIN", user_id="auditor")
        response = self.client.get(
            "/api/export?type=services&startDate=2024-01-01&columns=ID"
        )
        self.assertEqual(response.status_code, 200)
        self.app.extensions["audit_sink"].wait(timeout=5)
        with session_scope(self.sessions) as session:
            entries = session.query(ExportLog).all()
            self.assertEqual(len(entries), 1)
            entry = entries[0]
            self.assertEqual(entry.user_id, "auditor")
            self.assertEqual(entry.type, "services")
            self.assertEqual(entry.format, "csv")
            filters = json.loads(entry.filters)
        self.assertEqual(filters["startDate"], "2024-01-01")
        self.assertIsNone(filters["endDate"])
        self.assertEqual(filters["columns"], ["ID"])
        self.assertFalse(filters["token"])

    def test_rejected_export_is_not_logged(self):
        self.login("CUSTOMER")
        self.client.get("/api/export?type=staff")
        self.app.extensions["audit_sink"].wait(timeout=5)
        with session_scope(self.sessions) as session:
            self.assertEqual(session.query(ExportLog).count(), 0)

    def test_audit_failure_does_not_fail_export(self):
        self.login("ADMIN")
        with patch(
            "export_service.services.audit.ExportLog", side_effect=RuntimeError("disk full")
        ):
            response = self.client.get("/api/export?type=services")
            self.app.extensions["audit_sink"].wait(timeout=5)
        self.assertEqual(response.status_code, 200)


class ExportSignTest(ExportAppTestCase):
    def test_sign_requires_session(self):
        response = self.client.post("/api/export/sign", json={"type": "services"})
        self.assertEqual(response.status_code, 401)

    def test_sign_requires_type(self):
        self.login("MANAGER")
        response = self.client.post("/api/export/sign", json={})
        self.assertEqual(response.status_code, 400)

    def test_signed_url_downloads_without_session(self):
        seed_everything(self.sessions)
        self.login("MANAGER", user_id="manager-7")
        response = self.client.post(
            "/api/export/sign",
            json={
                "type": "invoices",
                "format": "csv",
                "columns": ["Number", "Total"],
                "stream": False,
                "expiresInSeconds": 5,
            },
        )
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        query = parse_qs(urlparse(payload["url"]).query)
        self.assertEqual(query["type"], ["invoices"])
        self.assertEqual(query["columns"], ["Number,Total"])
        self.assertEqual(query["token"], [payload["token"]])
        self.assertNotIn("stream", query)

        self.lookup.return_value = None
        download = self.client.get(payload["url"])
        self.assertEqual(download.status_code, 200)
        rows = self.csv_rows(download.get_data(as_text=True))
        self.assertEqual(rows[0], ["Number", "Total"])


class ExportAnalyticsTest(ExportAppTestCase):
    def test_requires_manager_role(self):
        self.assertEqual(self.client.get("/api/export/analytics").status_code, 401)
        self.login("STAFF_AUTO")
        self.assertEqual(self.client.get("/api/export/analytics").status_code, 403)

    def test_aggregates_recent_exports(self):
        now = utc_now()
        with session_scope(self.sessions) as session:
            for export_type in ("services", "services", "invoices"):
                session.add(ExportLog(user_id="u", type=export_type, format="csv",
                                      filters="{}", created_at=now))
            session.add(ExportLog(user_id="u", type="staff", format="csv",
                                  filters="{}", created_at=BASE_TIME))
        self.login("CEO")
        response = self.client.get("/api/export/analytics?days=7")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["days"], 7)
        self.assertEqual(payload["total"], 3)
        self.assertEqual(
            payload["typeCounts"],
            [{"type": "invoices", "count": 1}, {"type": "services", "count": 2}],
        )
        self.assertEqual(payload["topDays"], [{"day": now.date().isoformat(), "count": 3}])


class ExportJobsTest(ExportAppTestCase):
    def test_create_job_returns_signed_url(self):
        self.login("STAFF_AUTO", user_id="tech-1")
        response = self.client.post(
            "/api/export/jobs", json={"type": "vehicles", "startDate": "2024-01-01"}
        )
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["status"], "DONE")
        query = parse_qs(urlparse(payload["url"]).query)
        self.assertEqual(query["startDate"], ["2024-01-01"])
        self.assertEqual(query["stream"], ["true"])

        listing = self.client.get("/api/export/jobs").get_json()["jobs"]
        self.assertEqual(len(listing), 1)
        self.assertEqual(listing[0]["id"], payload["jobId"])
        self.assertEqual(listing[0]["type"], "vehicles")

    def test_run_processes_oldest_pending_job(self):
        with session_scope(self.sessions) as session:
            session.add(ExportJob(user_id="u-9", type="staff", format="pdf",
                                  params=json.dumps({"stream": False}), status="PENDING"))
        self.login("STAFF_AUTO")
        self.assertEqual(self.client.post("/api/export/jobs/run").status_code, 403)

        self.login("ADMIN")
        response = self.client.post("/api/export/jobs/run")
        payload = response.get_json()
        self.assertEqual(payload["status"], "DONE")
        self.assertIn("format=pdf", payload["url"])
        with session_scope(self.sessions) as session:
            job = session.query(ExportJob).one()
            self.assertEqual(job.status, "DONE")
            self.assertTrue(job.token)

        response = self.client.post("/api/export/jobs/run")
        self.assertEqual(response.get_json(), {"message": "No pending jobs"})


if __name__ == "__main__":
    unittest.main()
