from __future__ import annotations

import os
import tempfile
import time
import unittest
from dataclasses import replace
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, create_engine

from judging_node.config.runtime import RuntimeSettings, ScoringSettings
from judging_node.db.control_state import DBControlStateRepository
from judging_node.db.init_db import init_db
from judging_node.db.repositories import DBContestantRepository, DBJudgeRepository
from judging_node.entities.roster import Contestant, Judge, Role
from judging_node.workers.api_worker import LiveRuntime, app

FULL = {"personality": 8, "walking": 7, "attire": 9, "language": 6, "overall": 10}
ADMIN = {"X-Identity-Id": "a1"}
JUDGE = {"X-Identity-Id": "j1"}


class _ApiTestCase(unittest.TestCase):
    judging_open = True

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.engine = create_engine(
            f"sqlite:///{os.path.join(self.tmp.name, 'judging.db')}",
            connect_args={"check_same_thread": False},
        )
        init_db(self.engine)
        with Session(self.engine) as session:
            contestants = DBContestantRepository(session)
            contestants.save(Contestant(id="c1", number="1", name="Lea", character="Queen"))
            contestants.save(Contestant(id="c2", number="2", name="Tom", character="Pirate"))
            judges = DBJudgeRepository(session)
            judges.save(Judge(id="j1", name="Ana", email="ana@example.com", role=Role.JUDGE))
            judges.save(Judge(id="a1", name="Boss", email="boss@example.com", role=Role.ADMIN))
            control = DBControlStateRepository(session)
            control.save(replace(
                control.get(), current_contestant_id="c1", is_judging_open=self.judging_open,
            ))

        engine = self.engine
        app.state.runtime_factory = lambda: LiveRuntime(
            session_factory=lambda: Session(engine),
            settings=RuntimeSettings(
                countdown_seconds=2,
                tick_interval_seconds=0.01,
                api_host="127.0.0.1",
                api_port=8000,
                live_notify=False,
            ),
            scoring=ScoringSettings(),
        )
        self.client = TestClient(app)
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)
        del app.state.runtime_factory
        self.engine.dispose()
        self.tmp.cleanup()

    def _wait_for_control(self, predicate, timeout: float = 3.0) -> dict:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            doc = self.client.get("/control").json()
            if predicate(doc):
                return doc
            time.sleep(0.02)
        self.fail("control state never reached the expected value")


# ── Reads ──


class TestReads(_ApiTestCase):
    def test_healthz(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})

    def test_control_document(self):
        doc = self.client.get("/control").json()
        self.assertEqual(doc["currentContestantId"], "c1")
        self.assertFalse(doc["isCountingDown"])

    def test_contestants_open_to_everyone(self):
        resp = self.client.get("/contestants")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([c["id"] for c in resp.json()], ["c1", "c2"])

    def test_judges_admin_only(self):
        self.assertEqual(self.client.get("/judges").status_code, 403)
        self.assertEqual(self.client.get("/judges", headers=JUDGE).status_code, 403)
        resp = self.client.get("/judges", headers=ADMIN)
        self.assertEqual({j["id"] for j in resp.json()}, {"j1", "a1"})


# ── Scoring ──


class TestScoring(_ApiTestCase):
    def _submit(self, headers=JUDGE, **overrides):
        body = {"contestant_id": "c1", "scores": FULL, "decision": "keep", **overrides}
        return self.client.post("/scores", json=body, headers=headers)

    def test_submit_then_duplicate_rejected(self):
        resp = self._submit()
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["totalScore"], 40)

        again = self._submit(scores={c: 1 for c in FULL})
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["error"], "already_submitted")

    def test_judge_view_shows_own_score(self):
        before = self.client.get("/judge/current", headers=JUDGE).json()
        self.assertFalse(before["alreadySubmitted"])
        self.assertEqual(before["contestant"]["id"], "c1")

        self._submit()
        after = self.client.get("/judge/current", headers=JUDGE).json()
        self.assertTrue(after["alreadySubmitted"])
        self.assertEqual(after["score"]["keepStatus"], "keep")

    def test_judge_view_store_failure(self):
        with patch.object(
            DBControlStateRepository, "get", side_effect=OperationalError("SELECT", {}, Exception("down")),
        ):
            resp = self.client.get("/judge/current", headers=JUDGE)
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["error"], "store_unavailable")

    def test_admin_cannot_submit(self):
        resp = self._submit(headers=ADMIN)
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["error"], "authorization_denied")

    def test_incomplete_submission(self):
        resp = self._submit(scores={"overall": 9})
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["error"], "incomplete_input")

    def test_contestant_not_on_stage(self):
        resp = self._submit(contestant_id="c2")
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["error"], "judging_closed")


class TestScoringClosed(_ApiTestCase):
    judging_open = False

    def test_closed_judging_rejected(self):
        body = {"contestant_id": "c1", "scores": FULL, "decision": "keep"}
        resp = self.client.post("/scores", json=body, headers=JUDGE)
        self.assertEqual(resp.status_code, 409)


# ── Results ──


class TestResults(_ApiTestCase):
    def test_aggregate_and_read(self):
        self.client.post(
            "/scores", json={"contestant_id": "c1", "scores": FULL, "decision": "keep"}, headers=JUDGE,
        )
        resp = self.client.post("/admin/aggregate", headers=ADMIN)
        self.assertEqual(resp.status_code, 200)
        entries = resp.json()["entries"]
        self.assertEqual(entries[0]["id"], "c1")
        self.assertEqual(entries[0]["averageScore"], 40.0)
        self.assertEqual(entries[1]["averageScore"], 0.0)

        audience = self.client.get("/results").json()
        self.assertEqual(audience["entries"], entries)

    def test_results_empty_before_aggregation(self):
        self.assertEqual(self.client.get("/results").json()["entries"], [])

    def test_judges_cannot_read_results(self):
        self.assertEqual(self.client.get("/results", headers=JUDGE).status_code, 403)

    def test_aggregate_admin_only(self):
        self.assertEqual(self.client.post("/admin/aggregate", headers=JUDGE).status_code, 403)


# ── Live control ──


class TestControl(_ApiTestCase):
    def test_next_commits_after_countdown(self):
        resp = self.client.post("/admin/transitions", json={"action": "next"}, headers=ADMIN)
        self.assertEqual(resp.status_code, 202)
        pending = resp.json()
        self.assertTrue(pending["isCountingDown"])
        self.assertEqual(pending["nextContestantIdAfterCountdown"], "c2")
        self.assertEqual(pending["currentContestantId"], "c1")

        doc = self._wait_for_control(lambda d: not d["isCountingDown"])
        self.assertEqual(doc["currentContestantId"], "c2")

    def test_goto_and_toggle(self):
        self.client.post(
            "/admin/transitions", json={"action": "goto", "contestant_id": "c2"}, headers=ADMIN,
        )
        self._wait_for_control(lambda d: d["currentContestantId"] == "c2" and not d["isCountingDown"])
        self.client.post("/admin/transitions", json={"action": "toggle_summary"}, headers=ADMIN)
        doc = self._wait_for_control(lambda d: not d["isCountingDown"])
        self.assertTrue(doc["showSummaryScreen"])
        self.assertTrue(doc["isJudgingOpen"])

    def test_goto_unknown_contestant(self):
        resp = self.client.post(
            "/admin/transitions", json={"action": "goto", "contestant_id": "zz"}, headers=ADMIN,
        )
        self.assertEqual(resp.status_code, 404)

    def test_concurrent_transition_rejected_and_cancel(self):
        first = self.client.post(
            "/admin/transitions", json={"action": "next", "seconds": 600}, headers=ADMIN,
        )
        self.assertEqual(first.status_code, 202)
        second = self.client.post("/admin/transitions", json={"action": "previous"}, headers=ADMIN)
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["error"], "transition_in_progress")

        cancelled = self.client.post("/admin/transitions/cancel", headers=ADMIN)
        self.assertEqual(cancelled.status_code, 200)
        self.assertFalse(cancelled.json()["isCountingDown"])
        self.assertEqual(cancelled.json()["currentContestantId"], "c1")

        again = self.client.post("/admin/transitions/cancel", headers=ADMIN)
        self.assertEqual(again.json()["error"], "no_active_transition")

    def test_transitions_admin_only(self):
        resp = self.client.post("/admin/transitions", json={"action": "next"}, headers=JUDGE)
        self.assertEqual(resp.status_code, 403)

    def test_clear_stage_and_video(self):
        cleared = self.client.post("/admin/stage/clear", headers=ADMIN).json()
        self.assertIsNone(cleared["currentContestantId"])

        video = self.client.put(
            "/admin/video", json={"video_url": "https://example.com/v.mp4", "playing": True}, headers=ADMIN,
        ).json()
        self.assertEqual(video["videoUrl"], "https://example.com/v.mp4")
        self.assertTrue(video["videoPlaying"])
        toggled = self.client.put("/admin/video", json={}, headers=ADMIN).json()
        self.assertFalse(toggled["videoPlaying"])

    def test_video_url_and_playing_written_once(self):
        before = self.client.get("/control").json()["version"]
        original_save = DBControlStateRepository.save
        writes = []

        def failing_second_save(repo, state):
            writes.append(state)
            if len(writes) > 1:
                raise OperationalError("UPDATE", {}, Exception("down"))
            return original_save(repo, state)

        with patch.object(
            DBControlStateRepository, "save", autospec=True, side_effect=failing_second_save,
        ):
            resp = self.client.put(
                "/admin/video", json={"video_url": "https://example.com/v.mp4", "playing": True},
                headers=ADMIN,
            )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(writes), 1)
        doc = resp.json()
        self.assertEqual(doc["version"], before + 1)
        self.assertEqual(doc["videoUrl"], "https://example.com/v.mp4")
        self.assertTrue(doc["videoPlaying"])


# ── Roster ──


class TestRoster(_ApiTestCase):
    def test_add_and_delete_contestant(self):
        resp = self.client.post(
            "/admin/contestants",
            json={"number": "3", "name": "Mia", "character": "Fairy"},
            headers=ADMIN,
        )
        self.assertEqual(resp.status_code, 201)
        contestant_id = resp.json()["id"]
        self.assertEqual(len(self.client.get("/contestants").json()), 3)

        deleted = self.client.delete(f"/admin/contestants/{contestant_id}", headers=ADMIN)
        self.assertEqual(deleted.json()["deleted_scores"], 0)
        missing = self.client.delete(f"/admin/contestants/{contestant_id}", headers=ADMIN)
        self.assertEqual(missing.status_code, 404)

    def test_delete_contestant_on_stage_clears_stage(self):
        resp = self.client.delete("/admin/contestants/c1", headers=ADMIN)
        self.assertEqual(resp.status_code, 200)
        doc = self.client.get("/control").json()
        self.assertIsNone(doc["currentContestantId"])
        self.assertEqual([c["id"] for c in self.client.get("/contestants").json()], ["c2"])

    def test_delete_judge_cascades(self):
        self.client.post(
            "/scores", json={"contestant_id": "c1", "scores": FULL, "decision": "keep"}, headers=JUDGE,
        )
        resp = self.client.delete("/admin/judges/j1", headers=ADMIN)
        self.assertEqual(resp.json()["deleted_scores"], 1)
        # the removed judge is now audience
        self.assertEqual(self.client.get("/judge/current", headers=JUDGE).status_code, 403)

    def test_add_judge(self):
        resp = self.client.post(
            "/admin/judges",
            json={"id": "j2", "name": "Ben", "email": "ben@example.com", "role": "judge"},
            headers=ADMIN,
        )
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(self.client.get("/judge/current", headers={"X-Identity-Id": "j2"}).status_code, 200)


# ── Live views ──


class TestLiveSocket(_ApiTestCase):
    def test_audience_receives_control_then_results(self):
        with self.client.websocket_connect("/ws/live") as ws:
            first = ws.receive_json()
            self.assertEqual(first["channel"], "control_state")
            self.assertEqual(first["document"]["currentContestantId"], "c1")

            self.client.post("/admin/aggregate", headers=ADMIN)
            update = ws.receive_json()
            self.assertEqual(update["channel"], "results")
            self.assertEqual(len(update["document"]["entries"]), 2)

    def test_control_changes_pushed(self):
        with self.client.websocket_connect("/ws/live", headers=JUDGE) as ws:
            ws.receive_json()
            self.client.post("/admin/stage/clear", headers=ADMIN)
            update = ws.receive_json()
            self.assertEqual(update["channel"], "control_state")
            self.assertIsNone(update["document"]["currentContestantId"])

    def test_identify_rebuilds_subscriptions(self):
        with self.client.websocket_connect("/ws/live") as ws:
            ws.receive_json()
            ws.send_json({"action": "identify", "identity_id": "j1"})
            again = ws.receive_json()
            self.assertEqual(again["channel"], "control_state")

    def test_identify_store_failure_reported(self):
        with self.client.websocket_connect("/ws/live") as ws:
            ws.receive_json()
            with patch.object(
                DBJudgeRepository, "fetch", side_effect=OperationalError("SELECT", {}, Exception("down")),
            ):
                ws.send_json({"action": "identify", "identity_id": "j1"})
                error = ws.receive_json()
            self.assertEqual(error["channel"], "error")
            self.assertEqual(error["document"]["error"], "store_unavailable")


if __name__ == "__main__":
    unittest.main()
