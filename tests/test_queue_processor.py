"""Tests for the misconception queue batch processor."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import patch

from db_stores import ExplanationCacheDB, MisconceptionQueueDB
from queue_processor import BatchResult, MisconceptionQueueProcessor, process_queue


def _enqueue(student="s1", question="q1", code="FR1"):
    return MisconceptionQueueDB().enqueue(student, question, "2/6", "3/4", code)


class TestBatchResult:
    def test_optimization_rate(self):
        assert BatchResult(api_calls=1, cache_hits=2).optimization_rate == 67
        assert BatchResult(api_calls=3).optimization_rate == 0
        assert BatchResult(cache_hits=4).optimization_rate == 100

    def test_to_dict_keys(self):
        payload = BatchResult(processed=2, api_calls=1, cache_hits=1).to_dict()
        assert payload == {
            "success": True, "processed": 2, "apiCalls": 1, "cacheHits": 1,
            "failed": 0, "skipped": 0, "optimizationRate": 50,
        }


class TestProcessQueue:
    @patch("ai_resilience._do_call")
    def test_empty_queue(self, mock_call, llm_app):
        result = process_queue(llm_app.config)
        assert result["processed"] == 0
        assert result["message"] == "No items in queue"
        mock_call.assert_not_called()

    @patch("ai_resilience._do_call")
    def test_optimization_mode_without_keys(self, mock_call, app):
        item_id = _enqueue()
        result = process_queue(app.config)
        assert result["success"] is True
        assert result["processed"] == 0
        assert "optimization mode" in result["message"]
        assert MisconceptionQueueDB().get(item_id).status == "pending"
        mock_call.assert_not_called()

    @patch("ai_resilience._do_call")
    def test_cache_hit_skips_generation(self, mock_call, llm_app):
        ExplanationCacheDB().put("s1-q1-FR1", "Already explained.", "openai")
        item_id = _enqueue()

        result = process_queue(llm_app.config)

        assert (result["processed"], result["cacheHits"], result["apiCalls"]) == (1, 1, 0)
        assert result["optimizationRate"] == 100
        assert MisconceptionQueueDB().get(item_id).status == "completed"
        mock_call.assert_not_called()

    @patch("ai_resilience._do_call")
    def test_generates_with_deepseek(self, mock_call, llm_app):
        mock_call.return_value = "When adding fractions, find a common denominator first."
        item_id = _enqueue()

        result = process_queue(llm_app.config)

        assert (result["processed"], result["apiCalls"], result["failed"]) == (1, 1, 0)
        provider = mock_call.call_args.args[0]
        assert provider.name == "deepseek"
        assert "FR1" in mock_call.call_args.args[1]
        assert mock_call.call_args.args[4] == 150
        entry = ExplanationCacheDB().peek("s1-q1-FR1")
        assert entry["api_source"] == "deepseek"
        assert entry["explanation"].startswith("When adding fractions")
        assert MisconceptionQueueDB().get(item_id).status == "completed"

    @patch("ai_resilience._do_call")
    def test_falls_back_to_openai(self, mock_call, llm_app):
        def fake(provider, *args):
            if provider.name == "deepseek":
                raise RuntimeError("invalid api key")
            return "OpenAI explanation."
        mock_call.side_effect = fake
        _enqueue()

        result = process_queue(llm_app.config)

        assert result["apiCalls"] == 1
        assert ExplanationCacheDB().peek("s1-q1-FR1")["api_source"] == "openai"

    @patch("ai_resilience._do_call")
    def test_all_providers_fail(self, mock_call, llm_app):
        mock_call.side_effect = RuntimeError("invalid api key")
        item_id = _enqueue()

        result = process_queue(llm_app.config)

        assert (result["processed"], result["failed"]) == (0, 1)
        item = MisconceptionQueueDB().get(item_id)
        assert item.status == "failed"
        assert item.retry_count == 1
        assert item.next_attempt_at > datetime.now().isoformat()
        assert "deepseek" in item.last_error
        assert ExplanationCacheDB().peek("s1-q1-FR1") is None

    @patch("ai_resilience._do_call")
    def test_null_code_completes_without_call(self, mock_call, llm_app):
        item_id = _enqueue(code=None)
        result = process_queue(llm_app.config)
        assert result["processed"] == 1
        assert MisconceptionQueueDB().get(item_id).status == "completed"
        mock_call.assert_not_called()

    @patch("ai_resilience._do_call")
    def test_batch_size_bound(self, mock_call, llm_app):
        mock_call.return_value = "Explanation."
        llm_app.config["QUEUE_BATCH_SIZE"] = 2
        for n in range(3):
            _enqueue(question=f"q{n}")

        assert process_queue(llm_app.config)["processed"] == 2
        assert MisconceptionQueueDB().stats()["counts"]["pending"] == 1

    @patch("ai_resilience._do_call")
    def test_failed_item_retried_when_due(self, mock_call, llm_app, db):
        item_id = _enqueue()
        queue = MisconceptionQueueDB()
        queue.claim(item_id)
        queue.fail(item_id, "earlier outage", "")
        mock_call.return_value = "Recovered explanation."

        result = process_queue(llm_app.config)

        assert result["processed"] == 1
        assert queue.get(item_id).status == "completed"

    @patch("ai_resilience._do_call")
    def test_lost_claim_is_skipped(self, mock_call, llm_app):
        _enqueue()
        with patch("db_stores.MisconceptionQueueDB.claim", return_value=False):
            result = process_queue(llm_app.config)
        assert (result["skipped"], result["processed"]) == (1, 0)
        mock_call.assert_not_called()

    @patch("ai_resilience._do_call")
    def test_unexpected_error_marks_item_failed(self, mock_call, llm_app):
        item_id = _enqueue()
        with patch("db_stores.ExplanationCacheDB.get", side_effect=RuntimeError("disk I/O error")):
            result = process_queue(llm_app.config)
        assert result["failed"] == 1
        assert MisconceptionQueueDB().get(item_id).status == "failed"

    @patch("ai_resilience._do_call")
    def test_sweeps_old_completed_rows(self, mock_call, llm_app, db):
        item_id = _enqueue(code=None)
        queue = MisconceptionQueueDB()
        queue.claim(item_id)
        queue.complete(item_id)
        db.execute("UPDATE misconception_queue SET processed_at = '2000-01-01T00:00:00' WHERE id = ?",
                   (item_id,))
        db.commit()

        process_queue(llm_app.config)
        assert queue.get(item_id) is None


class TestClaimLease:
    def _strand(self, db, item_id, claimed_at="2000-01-01T00:00:00"):
        MisconceptionQueueDB().claim(item_id)
        db.execute("UPDATE misconception_queue SET claimed_at = ? WHERE id = ?",
                   (claimed_at, item_id))
        db.commit()

    @patch("ai_resilience._do_call")
    def test_expired_claim_moves_to_failed(self, mock_call, llm_app, db):
        item_id = _enqueue()
        self._strand(db, item_id)

        process_queue(llm_app.config)

        item = MisconceptionQueueDB().get(item_id)
        assert item.status == "failed"
        assert item.retry_count == 1
        assert "claim expired" in item.last_error
        assert item.next_attempt_at > datetime.now().isoformat()
        mock_call.assert_not_called()

    @patch("ai_resilience._do_call")
    def test_released_row_is_retried_once_due(self, mock_call, llm_app, db):
        mock_call.return_value = "Explained after restart."
        item_id = _enqueue()
        self._strand(db, item_id)
        llm_app.config["QUEUE_RETRY_BACKOFF_SECONDS"] = 0

        result = process_queue(llm_app.config)

        assert result["processed"] == 1
        assert MisconceptionQueueDB().get(item_id).status == "completed"

    @patch("ai_resilience._do_call")
    def test_fresh_claim_is_left_alone(self, mock_call, llm_app, db):
        item_id = _enqueue()
        self._strand(db, item_id, claimed_at=datetime.now().isoformat())

        result = process_queue(llm_app.config)

        assert result["processed"] == 0
        assert MisconceptionQueueDB().get(item_id).status == "processing"

    def test_stale_claims_query(self, app, db):
        old_id, new_id = _enqueue(), _enqueue(question="q2")
        self._strand(db, old_id)
        self._strand(db, new_id, claimed_at=datetime.now().isoformat())
        assert [i.id for i in MisconceptionQueueDB().stale_claims(300)] == [old_id]


class TestRetryBackoff:
    def test_exponential(self, app):
        processor = MisconceptionQueueProcessor([], retry_backoff_seconds=60)
        before = datetime.now()
        first = datetime.fromisoformat(processor._retry_at(1))
        third = datetime.fromisoformat(processor._retry_at(3))
        assert 59 <= (first - before).total_seconds() <= 61
        assert 239 <= (third - before).total_seconds() <= 241
