import sqlite3
import tempfile
import threading
import unittest
from pathlib import Path

from contentquery.errors import ConfigurationError, SessionNotFoundError, ValidationError
from contentquery.session_store import (
    InMemorySessionStore,
    SqliteSessionStore,
    build_session_store,
)


class _SessionStoreContract:
    """Behaviour shared by every backend; mixed into the concrete test cases below."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()

    def tearDown(self):
        self.store.close()

    def test_create_then_fetch_url_session(self):
        created = self.store.create_session(
            topic="technology",
            source_kind="url",
            url="https://example.com/post",
            extracted_content="Hello world. This is content.",
            word_count=5,
            read_time=1,
            model_used="model-a",
            title="Hello",
        )
        fetched = self.store.get_session(created.id)
        self.assertEqual(fetched, created)
        self.assertEqual(fetched.topic, "technology")
        self.assertEqual(fetched.source_kind, "url")
        self.assertIsNotNone(fetched.extracted_content)

    def test_topic_only_session_has_no_content(self):
        created = self.store.create_session(topic="history", source_kind="topic-only", model_used="model-a")
        fetched = self.store.get_session(created.id)
        self.assertEqual(fetched.source_kind, "topic-only")
        self.assertIsNone(fetched.extracted_content)
        self.assertIsNone(fetched.url)
        self.assertIsNone(fetched.file_name)

    def test_unknown_session_returns_none(self):
        self.assertIsNone(self.store.get_session("does-not-exist"))

    def test_invariants_enforced(self):
        with self.assertRaises(ValidationError):
            self.store.create_session(topic="x", source_kind="topic-only", extracted_content="text")
        with self.assertRaises(ValidationError):
            self.store.create_session(topic="x", source_kind="url", extracted_content="text")
        with self.assertRaises(ValidationError):
            self.store.create_session(
                topic="x", source_kind="pdf", file_name="a.pdf", url="https://e.com", extracted_content="t"
            )
        with self.assertRaises(ValidationError):
            self.store.create_session(topic="  ", source_kind="topic-only")

    def test_sessions_listed_newest_first(self):
        first = self.store.create_session(topic="one", source_kind="topic-only")
        second = self.store.create_session(topic="two", source_kind="topic-only")
        listed = [session.id for session in self.store.list_sessions()]
        self.assertEqual(listed.index(second.id), 0)
        self.assertEqual(listed.index(first.id), 1)

    def test_messages_are_chronological(self):
        session = self.store.create_session(topic="t", source_kind="topic-only")
        a = self.store.append_message(session.id, "user", "A")
        b = self.store.append_message(session.id, "assistant", "B", model_used="model-a")
        messages = self.store.list_messages(session.id)
        self.assertEqual([m.id for m in messages], [a.id, b.id])
        self.assertLessEqual(messages[0].timestamp, messages[1].timestamp)
        self.assertEqual(messages[1].model_used, "model-a")
        self.assertIsNone(messages[0].model_used)

    def test_append_to_unknown_session_raises(self):
        with self.assertRaises(SessionNotFoundError):
            self.store.append_message("missing", "user", "hello")

    def test_invalid_role_rejected(self):
        session = self.store.create_session(topic="t", source_kind="topic-only")
        with self.assertRaises(ValidationError):
            self.store.append_message(session.id, "system", "nope")

    def test_concurrent_appends_lose_nothing(self):
        session = self.store.create_session(topic="t", source_kind="topic-only")

        def _worker(worker_id):
            for idx in range(20):
                self.store.append_message(session.id, "user", f"{worker_id}-{idx}")

        threads = [threading.Thread(target=_worker, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        messages = self.store.list_messages(session.id)
        self.assertEqual(len(messages), 80)
        self.assertEqual(len({m.id for m in messages}), 80)
        timestamps = [m.timestamp for m in messages]
        self.assertEqual(timestamps, sorted(timestamps))

    def test_to_dict_uses_api_field_names(self):
        session = self.store.create_session(
            topic="science", source_kind="pdf", file_name="notes.pdf", extracted_content="text"
        )
        payload = session.to_dict()
        self.assertEqual(payload["sourceType"], "pdf")
        self.assertEqual(payload["fileName"], "notes.pdf")
        self.assertIn("createdAt", payload)


class TestInMemorySessionStore(_SessionStoreContract, unittest.TestCase):
    def make_store(self):
        return InMemorySessionStore()


class TestSqliteSessionStore(_SessionStoreContract, unittest.TestCase):
    def make_store(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmp.name) / "sessions.sqlite"
        return SqliteSessionStore(self.db_path)

    def tearDown(self):
        super().tearDown()
        self.tmp.cleanup()

    def test_sessions_survive_reopen(self):
        session = self.store.create_session(topic="persist", source_kind="topic-only")
        self.store.append_message(session.id, "user", "still here?")
        self.store.close()

        self.store = SqliteSessionStore(self.db_path)
        self.assertEqual(self.store.get_session(session.id).topic, "persist")
        self.assertEqual([m.content for m in self.store.list_messages(session.id)], ["still here?"])

    def test_migrations_recorded_once(self):
        self.store.close()
        self.store = SqliteSessionStore(self.db_path)
        conn = sqlite3.connect(str(self.db_path))
        try:
            versions = conn.execute(
                "SELECT version FROM schema_migrations WHERE component = 'session_store'"
            ).fetchall()
        finally:
            conn.close()
        self.assertEqual(len(versions), len(set(versions)))
        self.assertGreaterEqual(len(versions), 1)


class TestBuildSessionStore(unittest.TestCase):
    def test_memory_backend(self):
        self.assertIsInstance(build_session_store("memory"), InMemorySessionStore)

    def test_unknown_backend(self):
        with self.assertRaises(ConfigurationError):
            build_session_store("redis")


if __name__ == "__main__":
    unittest.main()
