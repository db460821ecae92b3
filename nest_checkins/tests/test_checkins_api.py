import json
import os
import sys
import unittest
from datetime import datetime
from pathlib import Path

from fastapi.testclient import TestClient


os.environ.setdefault("NEST_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import NestApp as app_module
import services.notification_service as notification_module
from db.base import Base
from db.session import SessionLocal, engine
from models.nest_models import (
    CHECKIN_COMPLETED,
    CHECKIN_PENDING,
    Checkin,
    Gear,
    GearRequest,
    GearRequestGear,
    Notification,
    NotificationQueue,
    Profile,
)
from services.google_chat_service import GoogleChatError


class CheckinApiTests(unittest.TestCase):
    def setUp(self):
        Base.metadata.drop_all(bind=engine)
        Base.metadata.create_all(bind=engine)
        with SessionLocal() as db:
            db.add_all(
                [
                    Profile(id="U", full_name="Uma User", email="uma@example.com", role="User", status="Active"),
                    Profile(id="A", full_name="Ari Admin", email="ari@example.com", role="Admin", status="Active"),
                    Profile(id="X", full_name="Old Admin", email="old@example.com", role="Admin", status="Inactive"),
                    GearRequest(id="R1", user_id="U", status="Checked Out"),
                ]
            )
            db.flush()
            db.add_all(
                [
                    Gear(id="G", name="Camera", quantity=3, available_quantity=0, status="Checked Out", current_request_id="R1", checked_out_to="U"),
                    Gear(id="L", name="LED Panel", quantity=1, available_quantity=1, status="Available"),
                ]
            )
            db.flush()
            db.add(GearRequestGear(gear_request_id="R1", gear_id="G", quantity=3))
            db.commit()

        self.chat_calls = []
        self._original_chat = notification_module.notify_google_chat
        notification_module.notify_google_chat = lambda event_type, payload: self.chat_calls.append((event_type, payload)) or True
        self.client = TestClient(app_module.app)

    def tearDown(self):
        notification_module.notify_google_chat = self._original_chat

    def _add_checkin(self, checkin_id, status=CHECKIN_PENDING, request_id="R1", gear_id="G", quantity=1, checkin_date=None):
        when = checkin_date or datetime(2024, 1, 5, 10, 0)
        with SessionLocal() as db:
            db.add(
                Checkin(
                    id=checkin_id,
                    user_id="U",
                    gear_id=gear_id,
                    request_id=request_id,
                    quantity=quantity,
                    status=status,
                    condition="Good",
                    checkin_date=when,
                    created_at=when,
                    updated_at=when,
                )
            )
            db.commit()

    def _queue(self):
        with SessionLocal() as db:
            return [(row.channel, row.recipient, row.subject) for row in db.query(NotificationQueue).order_by(NotificationQueue.id)]

    def test_healthz(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").status_code, 200)

    def test_submit_checkin_notifies_admins(self):
        response = self.client.post(
            "/api/checkins",
            json={"userId": "U", "gearId": "G", "quantity": 2, "condition": "Good", "notes": "all there"},
        )

        self.assertEqual(response.status_code, 200)
        checkin = response.json()["checkin"]
        self.assertEqual(checkin["status"], CHECKIN_PENDING)
        self.assertEqual(checkin["requestId"], "R1")
        self.assertEqual(checkin["gearName"], "Camera")
        self.assertEqual(checkin["userName"], "Uma User")
        self.assertEqual(checkin["quantity"], 2)

        with SessionLocal() as db:
            admin_notes = db.query(Notification).filter(Notification.user_id == "A").all()
            inactive_notes = db.query(Notification).filter(Notification.user_id == "X").all()
        self.assertEqual(len(admin_notes), 1)
        self.assertEqual(admin_notes[0].title, "New Check-in")
        self.assertEqual(inactive_notes, [])
        self.assertEqual([call[0] for call in self.chat_calls], ["USER_CHECKIN"])
        self.assertEqual(self.chat_calls[0][1]["gearNames"], ["Camera (x2)"])

    def test_submit_checkin_validation(self):
        self.assertEqual(self.client.post("/api/checkins", json={"userId": "nobody", "gearId": "G"}).status_code, 400)
        self.assertEqual(self.client.post("/api/checkins", json={"userId": "U", "gearId": "missing"}).status_code, 404)
        self.assertEqual(self.client.post("/api/checkins", json={"userId": "U", "gearId": "G", "quantity": 0}).status_code, 422)

    def test_list_checkins_paginates_and_filters(self):
        self._add_checkin("c1", checkin_date=datetime(2024, 1, 4))
        self._add_checkin("c2", status=CHECKIN_COMPLETED, checkin_date=datetime(2024, 1, 5))
        self._add_checkin("c3", checkin_date=datetime(2024, 1, 6))

        page = self.client.get("/api/checkins", params={"limit": 2, "page": 1}).json()
        self.assertEqual([row["id"] for row in page["checkins"]], ["c3", "c2"])
        self.assertEqual(page["pagination"], {"total": 3, "page": 1, "limit": 2, "totalPages": 2})

        pending = self.client.get("/api/checkins", params={"status": CHECKIN_PENDING}).json()
        self.assertEqual(sorted(row["id"] for row in pending["checkins"]), ["c1", "c3"])

    def test_board_groups_pending_rows_with_request_summary(self):
        self._add_checkin("c1", status=CHECKIN_COMPLETED, checkin_date=datetime(2024, 1, 4))
        self._add_checkin("c2", checkin_date=datetime(2024, 1, 5))
        self._add_checkin("d1", request_id=None, gear_id="L", status=CHECKIN_COMPLETED, checkin_date=datetime(2024, 1, 5, 12))

        board = self.client.get("/api/checkins/board").json()

        self.assertEqual([group["groupKey"] for group in board["pendingGroups"]], ["req::R1"])
        summary = board["pendingGroups"][0]["requestSummary"]
        self.assertEqual(summary["totalRequestedQty"], 3)
        self.assertEqual(summary["totalCompletedQty"], 1)
        self.assertEqual(summary["totalPendingQty"], 1)
        self.assertEqual(summary["totalOutstandingQty"], 1)
        self.assertEqual(
            [group["groupKey"] for group in board["recentGroups"]],
            ["user::U::Fri Jan 05 2024", "req::R1"],
        )
        self.assertIsNone(board["recentGroups"][0]["requestSummary"])
        self.assertEqual(board["pendingTotal"], 1)
        self.assertEqual(board["displayableTotal"], 2)
        self.assertIn("R1", board["requestSummaries"])

    def test_request_summaries_endpoint(self):
        self._add_checkin("c1", status=CHECKIN_COMPLETED)

        summaries = self.client.get("/api/checkins/request-summaries", params={"requestIds": "R1, ,R1"}).json()

        self.assertEqual(list(summaries), ["R1"])
        self.assertEqual(summaries["R1"]["totalOutstandingQty"], 2)
        self.assertEqual(self.client.get("/api/checkins/request-summaries").json(), {})

    def test_approve_requires_admin(self):
        self._add_checkin("c1")

        self.assertEqual(self.client.post("/api/checkins/approve", json={"checkinId": "c1"}).status_code, 401)
        self.assertEqual(self.client.post("/api/checkins/approve", json={"checkinId": "c1", "adminId": "U"}).status_code, 403)
        self.assertEqual(self.client.post("/api/checkins/approve", json={"checkinId": "c1", "adminId": "X"}).status_code, 403)

    def test_approve_requires_exactly_one_target(self):
        headers = {"X-User-ID": "A"}
        self.assertEqual(self.client.post("/api/checkins/approve", json={}, headers=headers).status_code, 400)
        self.assertEqual(
            self.client.post("/api/checkins/approve", json={"checkinId": "c1", "groupKey": "req::R1"}, headers=headers).status_code,
            400,
        )
        self.assertEqual(self.client.post("/api/checkins/approve", json={"groupKey": "bogus"}, headers=headers).status_code, 400)
        self.assertEqual(self.client.post("/api/checkins/approve", json={"checkinId": "missing"}, headers=headers).status_code, 404)

    def test_approve_single_checkin_completes_request_and_queues_notifications(self):
        self._add_checkin("c1", status=CHECKIN_COMPLETED, quantity=2)
        self._add_checkin("c2")

        response = self.client.post("/api/checkins/approve", json={"checkinId": "c2", "adminId": "A"})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["approved"], 1)
        self.assertEqual(body["message"], "Approved 1 pending check-in item(s).")
        self.assertTrue(body["requestCompleted"])

        history = self.client.get("/api/requests/R1/history").json()
        self.assertEqual(history["status"], "Completed")
        self.assertEqual([entry["status"] for entry in history["history"]], ["Completed"])

        self.assertEqual(
            self._queue(),
            [
                ("email", "uma@example.com", "Your Check-in Was Approved"),
                ("push", "U", "Your Check-in Was Approved!"),
                ("email", "ari@example.com", "Check-in Approved - Uma User"),
            ],
        )
        self.assertEqual([call[0] for call in self.chat_calls], ["ADMIN_APPROVE_CHECKIN"])
        self.assertEqual(self.chat_calls[0][1]["adminName"], "Ari Admin")

        again = self.client.post("/api/checkins/approve", json={"checkinId": "c2", "adminId": "A"})
        self.assertEqual(again.status_code, 409)

    def test_group_approval_and_already_processed_group(self):
        self._add_checkin("c1", quantity=1)
        self._add_checkin("c2", quantity=1, checkin_date=datetime(2024, 1, 6))

        first = self.client.post("/api/checkins/approve", json={"groupKey": "req::R1", "adminId": "A"})
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["approved"], 2)
        self.assertFalse(first.json()["requestCompleted"])

        second = self.client.post("/api/checkins/approve", json={"groupKey": "req::R1", "adminId": "A"})
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.json()["approved"], 0)
        self.assertEqual(second.json()["message"], "This group was already processed.")

    def test_reject_with_empty_reason_writes_nothing(self):
        self._add_checkin("c1")

        for reason in ("", "   "):
            with self.subTest(reason=reason):
                response = self.client.post("/api/checkins/reject", json={"checkinId": "c1", "reason": reason})
                self.assertEqual(response.status_code, 400)
        response = self.client.post("/api/checkins/reject", json={"checkinId": "c1"})
        self.assertEqual(response.status_code, 400)

        with SessionLocal() as db:
            self.assertEqual(db.get(Checkin, "c1").status, CHECKIN_PENDING)
        self.assertEqual(self._queue(), [])
        self.assertEqual(self.chat_calls, [])

    def test_reject_notifies_user_respecting_email_preference(self):
        with SessionLocal() as db:
            db.get(Profile, "U").notification_preferences = json.dumps({"email": {"gear_checkins": False}})
            db.commit()
        self._add_checkin("c1")

        response = self.client.post(
            "/api/checkins/reject",
            json={"checkinId": "c1", "reason": "Missing battery"},
            headers={"X-User-ID": "A"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["message"], "The user has been notified.")
        with SessionLocal() as db:
            checkin = db.get(Checkin, "c1")
            self.assertEqual(checkin.notes, "Rejected: Missing battery")
            user_notes = db.query(Notification).filter(Notification.user_id == "U").all()
        self.assertEqual([note.title for note in user_notes], ["Check-in Rejected"])
        self.assertEqual(
            self._queue(),
            [
                ("push", "U", "Your Check-in Was Rejected"),
                ("email", "ari@example.com", "Check-in Rejected - Uma User"),
            ],
        )
        self.assertEqual(self.chat_calls[0][0], "ADMIN_REJECT_CHECKIN")
        self.assertEqual(self.chat_calls[0][1]["reason"], "Missing battery")

        pending = self.client.get("/api/notifications/pending").json()
        self.assertEqual(pending[0]["payload"], {"checkin_id": "c1", "type": "checkin_rejection"})

    def test_chat_failure_does_not_fail_approval(self):
        def _failing(event_type, payload):
            raise GoogleChatError("webhook down")

        notification_module.notify_google_chat = _failing
        self._add_checkin("c1")

        response = self.client.post("/api/checkins/approve", json={"checkinId": "c1", "adminId": "A"})

        self.assertEqual(response.status_code, 200)
        with SessionLocal() as db:
            self.assertEqual(db.get(Checkin, "c1").status, CHECKIN_COMPLETED)

    def test_stats(self):
        submitted = self.client.post("/api/checkins", json={"userId": "U", "gearId": "L"}).json()["checkin"]
        self.client.post("/api/checkins/approve", json={"checkinId": submitted["id"], "adminId": "A"})
        self._add_checkin("c1")
        self._add_checkin("c2")
        self.client.post("/api/checkins/reject", json={"checkinId": "c2", "reason": "Wrong item", "adminId": "A"})

        stats = self.client.get("/api/checkins/stats").json()

        self.assertEqual(stats, {"pendingApprovals": 1, "completedToday": 1, "rejected": 1})

    def test_notifications_list_and_mark_read(self):
        self.client.post("/api/checkins", json={"userId": "U", "gearId": "L"})

        notes = self.client.get("/api/notifications", params={"userId": "A"}).json()
        self.assertEqual(len(notes), 1)
        self.assertFalse(notes[0]["isRead"])

        self.assertEqual(self.client.post(f"/api/notifications/{notes[0]['id']}/read").status_code, 200)
        self.assertEqual(self.client.get("/api/notifications", params={"userId": "A", "unreadOnly": True}).json(), [])
        self.assertEqual(self.client.post("/api/notifications/missing/read").status_code, 404)

    def test_request_history_not_found(self):
        self.assertEqual(self.client.get("/api/requests/missing/history").status_code, 404)

    def test_google_chat_relay(self):
        original = app_module.notify_google_chat
        calls = []
        app_module.notify_google_chat = lambda event_type, payload: calls.append(event_type) or False
        try:
            response = self.client.post(
                "/api/notifications/google-chat",
                json={"eventType": "USER_CHECKIN", "payload": {"userName": "Uma"}},
            )
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json(), {"success": True, "sent": False})
            self.assertEqual(calls, ["USER_CHECKIN"])

            def _failing(event_type, payload):
                raise GoogleChatError("Google Chat HTTP error: 500")

            app_module.notify_google_chat = _failing
            self.assertEqual(
                self.client.post("/api/notifications/google-chat", json={"eventType": "USER_CHECKIN"}).status_code,
                502,
            )
            self.assertEqual(
                self.client.post("/api/notifications/google-chat", json={"eventType": "SOMETHING_ELSE"}).status_code,
                422,
            )
        finally:
            app_module.notify_google_chat = original


if __name__ == "__main__":
    unittest.main()
