import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import fitz
import httpx
from fastapi.testclient import TestClient
from langchain_core.messages import AIMessage

from contentquery import config
from contentquery.api_server import create_app
from contentquery.config import ModelCredential
from contentquery.metrics import MetricsCollector
from contentquery.model_router import ModelFallbackInvoker
from contentquery.session_store import InMemorySessionStore
from contentquery.storage_provider import LocalUploadStorage

MODELS = ["model-a", "model-b", "model-c"]

PAGES = {
    "/hello": "<html><body><nav>menu</nav><article>Hello world. This is content.</article></body></html>",
}


class _PromptAwareChatModel:
    """Answers analysis, MCQ and chat prompts with canned replies."""

    def __init__(self, failure=None):
        self.failure = failure
        self.calls = []

    async def ainvoke(self, messages):
        self.calls.append(messages)
        if self.failure is not None:
            raise self.failure
        prompt = messages[-1].content
        if "content analyst" in prompt:
            return AIMessage(
                content=json.dumps({"title": "Hello", "summary": "A short greeting.", "keyPoints": ["Says hello"]})
            )
        if "multiple choice questions" in prompt:
            return AIMessage(
                content=json.dumps(
                    [
                        {"question": f"Q{idx}?", "options": ["a", "b", "c", "d"], "correctAnswer": 1, "explanation": "e"}
                        for idx in range(2)
                    ]
                )
            )
        return AIMessage(content=f"Answer to: {prompt}")


def _page_handler(request):
    body = PAGES.get(request.url.path)
    if body is None:
        return httpx.Response(404, text="not found")
    return httpx.Response(200, text=body)


def _pdf_bytes(lines):
    doc = fitz.open()
    try:
        page = doc.new_page()
        for idx, line in enumerate(lines):
            page.insert_text((72, 72 + 16 * idx), line)
        return doc.tobytes()
    finally:
        doc.close()


class _ApiTestCase(unittest.TestCase):
    failures = {}

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.chat_models = {model: _PromptAwareChatModel(self.failures.get(model)) for model in MODELS}
        self.metrics = MetricsCollector(root / "metrics")
        invoker = ModelFallbackInvoker(
            [ModelCredential(model, "COMPLETION_API_KEY", "sk-test") for model in MODELS],
            chat_model_factory=lambda cred: self.chat_models[cred.model_id],
            metrics=self.metrics,
        )
        self.upload_dir = root / "uploads"
        self.store = InMemorySessionStore()
        app = create_app(
            store=self.store,
            invoker=invoker,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(_page_handler)),
            upload_storage=LocalUploadStorage(self.upload_dir),
            metrics=self.metrics,
        )
        self.client = TestClient(app)
        self.client.__enter__()
        self.min_chars = patch.object(config, "MIN_URL_CONTENT_CHARS", 10)
        self.min_chars.start()

    def tearDown(self):
        self.min_chars.stop()
        self.client.__exit__(None, None, None)
        self.tmp.cleanup()

    def _topic_session(self, topic="astronomy"):
        response = self.client.post("/api/create-topic-session", json={"topic": topic})
        self.assertEqual(response.status_code, 200)
        return response.json()["session"]


class TestContentSessions(_ApiTestCase):
    def test_extract_content_end_to_end(self):
        response = self.client.post(
            "/api/extract-content", json={"url": "https://example.com/hello", "topic": "technology"}
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["session"]["extractedContent"], "Hello world. This is content.")
        self.assertEqual(body["session"]["sourceType"], "url")
        self.assertEqual(body["session"]["title"], "Hello")
        self.assertEqual(body["analysis"]["summary"], "A short greeting.")
        self.assertGreaterEqual(len(body["analysis"]["keyPoints"]), 1)
        self.assertIn(body["analysis"]["modelUsed"], MODELS)

        fetched = self.client.get(f"/api/sessions/{body['session']['id']}")
        self.assertEqual(fetched.status_code, 200)
        self.assertEqual(fetched.json()["topic"], "technology")

    def test_missing_fields_rejected_before_any_call(self):
        response = self.client.post("/api/extract-content", json={"url": "https://example.com/hello"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("topic", response.json()["message"])
        self.assertTrue(all(not model.calls for model in self.chat_models.values()))

    def test_bad_scheme_is_400(self):
        response = self.client.post("/api/extract-content", json={"url": "ftp://example.com/x", "topic": "t"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("protocol", response.json()["message"])

    def test_fetch_failure_is_extraction_error(self):
        response = self.client.post(
            "/api/extract-content", json={"url": "https://example.com/gone", "topic": "t"}
        )
        self.assertEqual(response.status_code, 422)
        self.assertIn("404", response.json()["message"])

    def test_topic_session(self):
        response = self.client.post(
            "/api/create-topic-session", json={"topic": "astronomy", "preferredModel": "model-b"}
        )
        body = response.json()
        self.assertEqual(body["session"]["sourceType"], "topic-only")
        self.assertIsNone(body["session"]["extractedContent"])
        self.assertEqual(body["analysis"]["title"], "Discussion about astronomy")
        self.assertEqual(body["analysis"]["modelUsed"], "model-b")
        self.assertTrue(all(not model.calls for model in self.chat_models.values()))

    def test_topic_session_defaults_to_first_model(self):
        self.assertEqual(self._topic_session()["modelUsed"], "model-a")

    def test_topic_session_ignores_unconfigured_preferred_model(self):
        response = self.client.post(
            "/api/create-topic-session", json={"topic": "astronomy", "preferredModel": "junk"}
        )
        body = response.json()
        self.assertEqual(body["session"]["modelUsed"], "model-a")
        self.assertEqual(body["analysis"]["modelUsed"], "model-a")

    def test_sessions_listed_newest_first(self):
        first = self._topic_session("one")
        second = self._topic_session("two")
        ids = [session["id"] for session in self.client.get("/api/sessions").json()]
        self.assertEqual(ids[:2], [second["id"], first["id"]])

    def test_unknown_session_is_404(self):
        response = self.client.get("/api/sessions/nope")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"message": "Session not found"})
        self.assertEqual(self.client.get("/api/sessions/nope/messages").status_code, 404)
        self.assertEqual(
            self.client.post("/api/sessions/nope/ask", json={"question": "hi"}).status_code, 404
        )


class TestPdfUpload(_ApiTestCase):
    def test_pdf_session_and_cleanup(self):
        data = _pdf_bytes(["Photosynthesis converts light", "into chemical energy in plants.", "Leaves hold chlorophyll."])
        response = self.client.post(
            "/api/extract-pdf",
            files={"pdf": ("notes.pdf", data, "application/pdf")},
            data={"topic": "science"},
        )
        self.assertEqual(response.status_code, 200)
        session = response.json()["session"]
        self.assertEqual(session["sourceType"], "pdf")
        self.assertEqual(session["fileName"], "notes.pdf")
        self.assertIsNone(session["url"])
        self.assertEqual(list(self.upload_dir.iterdir()), [])

    def test_unreadable_pdf_still_cleaned_up(self):
        response = self.client.post(
            "/api/extract-pdf",
            files={"pdf": ("broken.pdf", b"not really a pdf", "application/pdf")},
            data={"topic": "science"},
        )
        self.assertEqual(response.status_code, 422)
        self.assertEqual(list(self.upload_dir.iterdir()), [])

    def test_non_pdf_rejected(self):
        response = self.client.post(
            "/api/extract-pdf",
            files={"pdf": ("notes.txt", b"hello", "text/plain")},
            data={"topic": "science"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "Only PDF files are allowed")

    def test_oversized_pdf_rejected(self):
        with patch.object(config, "MAX_UPLOAD_BYTES", 16):
            response = self.client.post(
                "/api/extract-pdf",
                files={"pdf": ("big.pdf", b"%PDF-" + b"0" * 64, "application/pdf")},
                data={"topic": "science"},
            )
        self.assertEqual(response.status_code, 413)


class TestAsk(_ApiTestCase):
    def test_ask_appends_both_turns(self):
        session = self._topic_session()
        response = self.client.post(f"/api/sessions/{session['id']}/ask", json={"question": "What is a quasar?"})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["userMessage"]["role"], "user")
        self.assertEqual(body["userMessage"]["content"], "What is a quasar?")
        self.assertEqual(body["assistantMessage"]["role"], "assistant")
        self.assertEqual(body["assistantMessage"]["modelUsed"], "model-a")

        transcript = self.client.get(f"/api/sessions/{session['id']}/messages").json()
        self.assertEqual([m["role"] for m in transcript], ["user", "assistant"])

    def test_history_replayed_on_follow_up(self):
        session = self._topic_session()
        self.client.post(f"/api/sessions/{session['id']}/ask", json={"question": "First?"})
        self.client.post(f"/api/sessions/{session['id']}/ask", json={"question": "Second?"})
        last_call = self.chat_models["model-a"].calls[-1]
        # system prompt, previous user and assistant turns, new question
        self.assertEqual(len(last_call), 4)
        self.assertEqual(last_call[1].content, "First?")
        self.assertEqual(last_call[-1].content, "Second?")

    def test_blank_question_rejected(self):
        session = self._topic_session()
        response = self.client.post(f"/api/sessions/{session['id']}/ask", json={"question": "   "})
        self.assertEqual(response.status_code, 400)

    def test_export_data(self):
        session = self._topic_session("volcanoes")
        self.client.post(f"/api/sessions/{session['id']}/ask", json={"question": "Why do they erupt?"})
        body = self.client.get(f"/api/sessions/{session['id']}/export-pdf").json()
        self.assertEqual(body["session"]["id"], session["id"])
        self.assertEqual(len(body["messages"]), 2)
        self.assertEqual(body["exportData"]["title"], "Discussion about volcanoes")
        self.assertEqual(body["exportData"]["sourceType"], "topic-only")


class TestModelFallbackThroughApi(_ApiTestCase):
    failures = {"model-a": RuntimeError("HTTP 503")}

    def test_answer_comes_from_next_model(self):
        session = self._topic_session()
        body = self.client.post(f"/api/sessions/{session['id']}/ask", json={"question": "Hi?"}).json()
        self.assertEqual(body["assistantMessage"]["modelUsed"], "model-b")
        fallbacks = self.client.get("/api/metrics").json()["models"]["fallbacks"]
        self.assertEqual(fallbacks, 1)

    def test_unconfigured_preferred_model_adds_no_metrics(self):
        session = self._topic_session()
        for idx in range(5):
            self.client.post(
                f"/api/sessions/{session['id']}/ask", json={"question": "Hi?", "preferredModel": f"junk-{idx}"}
            )
        models = self.client.get("/api/metrics").json()["models"]
        self.assertEqual(sorted(models["attempts"]), ["model-a", "model-b"])
        self.assertEqual(models["fallbacks"], 5)


class TestAllModelsFailing(_ApiTestCase):
    failures = {model: RuntimeError(f"{model} down") for model in MODELS}

    def test_exhausted_models_surface_as_500_message(self):
        response = self.client.post(
            "/api/extract-content", json={"url": "https://example.com/hello", "topic": "technology"}
        )
        self.assertEqual(response.status_code, 500)
        self.assertTrue(response.json()["message"].startswith("All models failed"))
        self.assertIn("model-c down", response.json()["message"])

    def test_topic_mcq_fails_when_every_model_fails(self):
        response = self.client.post("/api/generate-mcq-topic", json={"topic": "science", "numberOfQuestions": 2})
        self.assertEqual(response.status_code, 500)


class TestMcqRoutes(_ApiTestCase):
    def test_topic_mcq(self):
        response = self.client.post(
            "/api/generate-mcq-topic",
            json={"topic": "science", "numberOfQuestions": 5, "difficultyLevel": "easy", "includeAnswers": True},
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["requestedCount"], 5)
        self.assertEqual(body["generatedCount"], 2)
        self.assertEqual(len(body["questions"]), 2)
        self.assertEqual(body["questions"][0]["correctAnswer"], 1)
        self.assertIn("ANSWER KEY", body["formattedContent"])
        self.assertIn(body["modelUsed"], MODELS)
        self.assertEqual(body["modelsUsed"], [body["modelUsed"]])

    def test_url_mcq(self):
        response = self.client.post(
            "/api/generate-mcq-url",
            json={"url": "https://example.com/hello", "topic": "technology", "numberOfQuestions": 2},
        )
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["fallbackUsed"])

    def test_pdf_mcq_uses_form_fields(self):
        data = _pdf_bytes(["Photosynthesis converts light", "into chemical energy in plants.", "Leaves hold chlorophyll."])
        response = self.client.post(
            "/api/generate-mcq-pdf",
            files={"pdf": ("notes.pdf", data, "application/pdf")},
            data={"topic": "science", "numberOfQuestions": "2", "includeAnswers": "false", "customHeader": "Quiz"},
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["formattedContent"].startswith("Quiz"))
        self.assertNotIn("ANSWER KEY", body["formattedContent"])
        self.assertEqual(list(self.upload_dir.iterdir()), [])

    def test_invalid_options_rejected(self):
        too_many = self.client.post(
            "/api/generate-mcq-topic", json={"topic": "science", "numberOfQuestions": config.MCQ_MAX_QUESTIONS + 1}
        )
        self.assertEqual(too_many.status_code, 400)
        bad_level = self.client.post(
            "/api/generate-mcq-topic", json={"topic": "science", "difficultyLevel": "impossible"}
        )
        self.assertEqual(bad_level.status_code, 400)
        bad_form = self.client.post(
            "/api/generate-mcq-pdf",
            files={"pdf": ("notes.pdf", b"%PDF-", "application/pdf")},
            data={"topic": "science", "numberOfQuestions": "many"},
        )
        self.assertEqual(bad_form.status_code, 400)


class TestServiceRoutes(_ApiTestCase):
    def test_models_health_metrics(self):
        self.assertEqual(self.client.get("/api/models").json(), {"models": MODELS})
        health = self.client.get("/api/health").json()
        self.assertEqual(health["status"], "ok")
        self.assertIn("timestamp", health)
        summary = self.client.get("/api/metrics").json()
        self.assertIn("latency", summary)
        self.assertGreaterEqual(summary["throughput"]["total_requests"], 2)


if __name__ == "__main__":
    unittest.main()
