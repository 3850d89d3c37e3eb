import unittest
from unittest.mock import patch

from core.errors import DownloadFailed, InvalidInput, NotFound, StorageUnavailable
from core.generation_poller import JOB_STATUS_CANCELED, JOB_STATUS_FAILED, JOB_STATUS_PROCESSING, ProviderJob
from core.models.generated_image import GeneratedImage
from core.reconciliation import GenerationReconciler
from tests.fakes import FakePoller, MemoryObjectStore, make_ledger, succeeded_job


class GenerationReconcilerTestCase(unittest.TestCase):
    def setUp(self):
        self.ledger = make_ledger()
        self.poller = FakePoller({"job_1": succeeded_job("job_1")})
        self.store = MemoryObjectStore()
        self.reconciler = GenerationReconciler(self.ledger, self.poller, self.store, url_ttl_seconds=600)

    def _rows(self, job_id):
        session = self.ledger.db.get_session()
        try:
            return session.query(GeneratedImage).filter(GeneratedImage.job_id == job_id).count()
        finally:
            session.close()

    def test_polled_twice_persists_once(self):
        first = self.reconciler.check_job("job_1", prompt="a cat in a hat")
        second = self.reconciler.check_job("job_1", prompt="a cat in a hat")

        self.assertEqual(first.status, "succeeded")
        self.assertEqual(first.image_url, "https://cdn.example.test/generated/job_1.png?e=600&token=signed")
        self.assertEqual(first.image_id, second.image_id)
        self.assertEqual(self.store.put_calls, ["generated/job_1.png"])
        self.assertEqual(len(self.poller.download_calls), 1)
        self.assertEqual(self.poller.status_calls, ["job_1"])
        self.assertEqual(self._rows("job_1"), 1)
        self.assertEqual(self.ledger.find_artifact("job_1")["prompt"], "a cat in a hat")

    def test_existing_object_is_reused(self):
        self.store.objects["generated/job_1.png"] = (b"already here", "image/png")
        result = self.reconciler.check_job("job_1", owner_id="u1")
        self.assertEqual(result.status, "succeeded")
        self.assertEqual(self.poller.download_calls, [])
        self.assertEqual(self.store.put_calls, [])
        self.assertEqual(self.ledger.find_artifact("job_1")["user_id"], "u1")

    def test_download_failure_is_retryable(self):
        self.poller.download_error = DownloadFailed("artifact download failed")
        with self.assertRaises(DownloadFailed):
            self.reconciler.check_job("job_1")
        self.assertEqual(self.store.objects, {})
        self.assertEqual(self._rows("job_1"), 0)

        self.poller.download_error = None
        self.assertEqual(self.reconciler.check_job("job_1").status, "succeeded")
        self.assertEqual(self._rows("job_1"), 1)

    def test_storage_failure_propagates(self):
        with patch.object(self.store, "put", side_effect=StorageUnavailable("object store write failed")):
            with self.assertRaises(StorageUnavailable):
                self.reconciler.check_job("job_1")
        self.assertEqual(self._rows("job_1"), 0)

    def test_provenance_failure_still_returns_url(self):
        with patch.object(self.ledger, "record_artifact", side_effect=StorageUnavailable("ledger write failed")):
            result = self.reconciler.check_job("job_1")
        self.assertEqual(result.status, "succeeded")
        self.assertIsNone(result.image_id)
        self.assertIn("generated/job_1.png", result.image_url)

        # next poll finds the object and records provenance without downloading again
        again = self.reconciler.check_job("job_1")
        self.assertIsNotNone(again.image_id)
        self.assertEqual(len(self.poller.download_calls), 1)

    def test_failed_and_canceled_jobs(self):
        self.poller.jobs["job_f"] = ProviderJob(id="job_f", status=JOB_STATUS_FAILED, error="NSFW content detected")
        self.poller.jobs["job_c"] = ProviderJob(id="job_c", status=JOB_STATUS_CANCELED)
        self.assertEqual(
            self.reconciler.check_job("job_f").to_response(),
            {"status": "failed", "error": "NSFW content detected"},
        )
        self.assertEqual(self.reconciler.check_job("job_c").to_response(), {"status": "failed", "error": "canceled"})
        self.assertEqual(self.store.put_calls, [])
        self.assertEqual(self.poller.download_calls, [])

    def test_in_progress_passthrough(self):
        self.poller.jobs["job_p"] = ProviderJob(id="job_p", status=JOB_STATUS_PROCESSING)
        self.assertEqual(self.reconciler.check_job("job_p").to_response(), {"status": "processing"})
        self.assertEqual(self._rows("job_p"), 0)

    def test_invalid_and_unknown_jobs(self):
        for job_id in ("", "../etc/passwd", "a" * 200):
            with self.assertRaises(InvalidInput):
                self.reconciler.check_job(job_id)
        with self.assertRaises(NotFound):
            self.reconciler.check_job("job_unknown")
        self.assertEqual(self.poller.status_calls, ["job_unknown"])


if __name__ == "__main__":
    unittest.main()
