"""
GradeLab - Test Suite
Unit and integration tests for the service layer. Every external service
(Supabase, Appwrite, LLM providers, HTTP downloads) is mocked.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), ".."))

import base64
import io
import unittest
from unittest.mock import MagicMock, patch

from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from gradelab import database as db_models
from gradelab.exceptions import ConfigurationError, EvaluationError, ExtractionError, NotFoundError, ValidationError


def make_session():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    db_models.init_db(bind=engine)
    return sessionmaker(bind=engine, autoflush=False)()


def answer(no, got, total, concepts=None):
    return {"question_no": no, "score": [got, total], "concepts": concepts or []}


def png_b64(color=(255, 255, 255)) -> str:
    buf = io.BytesIO()
    Image.new("RGB", (20, 20), color=color).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


# ─────────────────────────────────────────────────────────
# Question Paper Analysis Tests
# ─────────────────────────────────────────────────────────

class TestQuestionAnalysis(unittest.TestCase):

    def test_sections_split_with_remainder_last(self):
        from gradelab.evaluator import analyze_question_paper
        paper = "Section A\nQ1. Define ML.\nQ2. What is AI?\nQ3. List types.\nSection B\nQ4. Explain.\nQ5. Derive."
        result = analyze_question_paper(paper)
        self.assertEqual(result.total_questions, 5)
        self.assertEqual(result.questions_by_section, {"Section A": 3, "Section B": 2})

    def test_nothing_detected_defaults_to_fifty(self):
        from gradelab.evaluator import analyze_question_paper
        result = analyze_question_paper("")
        self.assertEqual(result.total_questions, 50)
        self.assertEqual(result.questions_by_section, {"Main Section": 50})

    def test_numbered_lines_count(self):
        from gradelab.evaluator import analyze_question_paper
        result = analyze_question_paper("1. First\n2) Second\n12 Twelfth question")
        self.assertEqual(result.total_questions, 12)

    def test_years_are_not_question_numbers(self):
        from gradelab.evaluator import analyze_question_paper
        result = analyze_question_paper("Question 1 (2024 board exam)\n2024 Marks: 100")
        self.assertEqual(result.total_questions, 1)

    def test_last_section_minimum_one(self):
        from gradelab.evaluator import analyze_question_paper
        result = analyze_question_paper("Section A Q1 Q2 Section B Section C")
        self.assertEqual(result.questions_by_section["Section C"], 1)

    def test_plural_sections_in_instructions_is_not_a_heading(self):
        from gradelab.evaluator import analyze_question_paper
        paper = ("Instructions: answer all sections.\nSection A\nQ1. Define.\nQ2. State.\n"
                 "Section B\nQ3. Explain.\nQ4. Derive.")
        result = analyze_question_paper(paper)
        self.assertEqual(result.questions_by_section, {"Section A": 2, "Section B": 2})

    def test_section_letters_follow_the_paper(self):
        from gradelab.evaluator import analyze_question_paper
        result = analyze_question_paper("SEC. C\nQ1\nSec D\nQ2\nSection C\nQ3")
        self.assertEqual(list(result.questions_by_section), ["Section C", "Section D"])


class TestBatching(unittest.TestCase):

    def test_batch_config_thresholds(self):
        from gradelab.evaluator import batch_config
        self.assertEqual(batch_config(50), (25, 10))
        self.assertEqual(batch_config(51), (20, 8))
        self.assertEqual(batch_config(200), (15, 6))
        self.assertEqual(batch_config(201), (10, 5))

    def test_make_question_batches(self):
        from gradelab.evaluator import make_question_batches
        self.assertEqual(make_question_batches(5, 2), [[1, 2], [3, 4], [5]])

    def test_max_tokens_for(self):
        from gradelab.llm_evaluator import max_tokens_for
        self.assertEqual(max_tokens_for(10), 4096)
        self.assertEqual(max_tokens_for(20), 8192)
        self.assertEqual(max_tokens_for(25), 16384)
        self.assertEqual(max_tokens_for(31), 32768)


# ─────────────────────────────────────────────────────────
# Combine Tests
# ─────────────────────────────────────────────────────────

class TestCombineBatchResults(unittest.TestCase):

    def setUp(self):
        from gradelab.llm_evaluator import StudentInfo
        self.student = StudentInfo(name="Asha", roll_number="12", class_name="10A", subject="Physics")

    def test_sorted_and_deduplicated(self):
        from gradelab.evaluator import combine_batch_results
        batches = [[answer(3, 1, 2), answer(1, 2, 2)], [answer(1, 0, 2), answer(2, 1, 2)]]
        result = combine_batch_results(batches, self.student, 3, {"Main Section": 3})
        self.assertEqual([a["question_no"] for a in result["answers"]], [1, 2, 3])
        self.assertEqual(result["answers"][0]["score"], [2, 2])

    def test_summary_and_feedback_lists(self):
        from gradelab.evaluator import combine_batch_results
        batches = [[answer(1, 5, 5, ["Newton's laws"]), answer(2, 0, 5)]]
        result = combine_batch_results(batches, self.student, 2, {"Main Section": 2})
        perf = result["overall_performance"]
        self.assertEqual(perf["strengths"], ["Strong performance in Newton's laws"])
        self.assertEqual(perf["areas_for_improvement"], ["Improve understanding in question 2"])
        self.assertEqual(perf["personalized_summary"],
                         "Asha scored 5/10 (50.0%). Areas for improvement identified.")
        self.assertEqual(len(perf["study_recommendations"]), 3)
        self.assertEqual(result["roll_no"], "12")

    def test_defaults_when_no_answers(self):
        from gradelab.evaluator import combine_batch_results
        result = combine_batch_results([[], []], self.student, 4, {"Main Section": 4})
        perf = result["overall_performance"]
        self.assertEqual(perf["strengths"], ["Continue working on core concepts"])
        self.assertEqual(perf["areas_for_improvement"], ["Review all topics covered"])
        self.assertIn("0/0 (0.0%)", perf["personalized_summary"])

    def test_format_marks(self):
        from gradelab.evaluator import format_marks
        self.assertEqual(format_marks(7.0), "7")
        self.assertEqual(format_marks(7.5), "7.5")


# ─────────────────────────────────────────────────────────
# LLM Evaluator Tests
# ─────────────────────────────────────────────────────────

class TestLLMEvaluator(unittest.TestCase):

    def setUp(self):
        from gradelab.llm_evaluator import LLMEvaluator, StudentInfo
        self.client = MagicMock()
        self.evaluator = LLMEvaluator(llm_client=self.client)
        self.student = StudentInfo(name="Ravi", roll_number="7", class_name="9B", subject="Maths")

    def test_parse_answers_object_with_fence(self):
        raw = '```json\n{"answers": [{"question_no": "2", "score": [1, 2]}, {"question_no": "x"}]}\n```'
        answers = self.evaluator.parse_batch_response(raw)
        self.assertEqual(len(answers), 1)
        self.assertEqual(answers[0]["question_no"], 2)
        self.assertEqual(answers[0]["score"], [1.0, 2.0])
        self.assertEqual(answers[0]["section"], "Main Section")

    def test_parse_bare_array(self):
        answers = self.evaluator.parse_batch_response('[{"question_no": 1, "score": 3, "concepts": "gravity"}]')
        self.assertEqual(answers[0]["score"], [3.0, 0.0])
        self.assertEqual(answers[0]["concepts"], ["gravity"])

    def test_build_prompt_contains_questions_and_rubric(self):
        prompt = self.evaluator.build_batch_prompt(
            [1, 2], "QP", "AK", "SHEET", self.student, rubric={"accuracy": 5, "clarity": 1},
        )
        self.assertIn("1, 2", prompt)
        self.assertIn("Ravi", prompt)
        self.assertIn("Accuracy: 5 (Very Strict)", prompt)
        self.assertIn("Clarity: 1 (Lenient)", prompt)

    def test_failed_batch_contributes_nothing(self):
        self.client.generate.side_effect = RuntimeError("timeout")
        self.assertEqual(self.evaluator.grade_batch([1], "QP", "AK", "S", self.student), [])

    def test_configuration_error_propagates(self):
        self.client.generate.side_effect = ConfigurationError("no keys")
        with self.assertRaises(ConfigurationError):
            self.evaluator.grade_batch([1], "QP", "AK", "S", self.student)

    def test_grade_batch_uses_json_mode(self):
        self.client.generate.return_value = MagicMock(text='{"answers": [{"question_no": 1, "score": [1, 1]}]}')
        answers = self.evaluator.grade_batch([1], "QP", "AK", "S", self.student)
        self.assertEqual(len(answers), 1)
        self.assertTrue(self.client.generate.call_args.kwargs["json_mode"])
        self.assertEqual(self.client.generate.call_args.kwargs["max_tokens"], 4096)

    def test_empty_answer_key_raises(self):
        self.client.is_configured = True
        self.client.generate.return_value = MagicMock(text="   ")
        with self.assertRaises(EvaluationError):
            self.evaluator.generate_answer_key("Q1. Define force.")

    def test_not_configured(self):
        self.client.is_configured = False
        with self.assertRaises(ConfigurationError):
            self.evaluator.ensure_configured()


# ─────────────────────────────────────────────────────────
# Evaluation Engine Tests
# ─────────────────────────────────────────────────────────

class TestEvaluationEngine(unittest.TestCase):

    def test_evaluate_grades_every_batch(self):
        from gradelab.evaluator import EvaluationEngine
        from gradelab.llm_evaluator import StudentInfo

        llm = MagicMock()
        llm.grade_batch.side_effect = lambda numbers, *a, **kw: [answer(n, 1, 2) for n in numbers]
        engine = EvaluationEngine(llm_evaluator=llm, chunk_delay_sec=0)

        result = engine.evaluate("Q1 a\nQ2 b\nQ3 c", "key", "sheet", StudentInfo(name="Mia"))
        llm.ensure_configured.assert_called_once()
        self.assertEqual(result["total_questions_detected"], 3)
        self.assertEqual(len(result["answers"]), 3)
        self.assertIn("Mia scored 3/6", result["overall_performance"]["personalized_summary"])

    def test_sleeps_between_chunks(self):
        from gradelab.evaluator import EvaluationEngine
        from gradelab.llm_evaluator import StudentInfo

        llm = MagicMock()
        llm.grade_batch.return_value = []
        sleep = MagicMock()
        engine = EvaluationEngine(llm_evaluator=llm, chunk_delay_sec=1.5, sleep=sleep)
        # 250 questions -> 25 batches of 10, 5 at a time -> 5 chunks, 4 pauses
        engine.evaluate("Q250", "key", "sheet", StudentInfo(name="Mia"))
        self.assertEqual(llm.grade_batch.call_count, 25)
        self.assertEqual(sleep.call_count, 4)
        sleep.assert_called_with(1.5)

    def test_not_configured_raises(self):
        from gradelab.evaluator import EvaluationEngine
        from gradelab.llm_evaluator import StudentInfo

        llm = MagicMock()
        llm.ensure_configured.side_effect = ConfigurationError("no LLM")
        with self.assertRaises(ConfigurationError):
            EvaluationEngine(llm_evaluator=llm).evaluate("Q1", "k", "s", StudentInfo(name="x"))
        llm.grade_batch.assert_not_called()


# ─────────────────────────────────────────────────────────
# LLM Client Tests
# ─────────────────────────────────────────────────────────

class TestLLMClient(unittest.TestCase):

    def _provider(self, text=None, error=None, vision=False):
        from gradelab.llm_provider import LLMResponse
        p = MagicMock()
        p.supports_vision = vision
        if error:
            p.generate.side_effect = error
            p.read_image.side_effect = error
        else:
            p.generate.return_value = LLMResponse(text=text, provider="fake", model="m")
            p.read_image.return_value = LLMResponse(text=text, provider="fake", model="m")
        return p

    def test_falls_through_to_next_provider(self):
        from gradelab.llm_provider import LLMClient
        first = self._provider(error=RuntimeError("rate limited"))
        second = self._provider(text="ok")
        client = LLMClient([first, second])
        self.assertEqual(client.generate("hi").text, "ok")
        first.generate.assert_called_once()

    def test_no_providers_is_configuration_error(self):
        from gradelab.llm_provider import LLMClient
        with self.assertRaises(ConfigurationError):
            LLMClient([]).generate("hi")

    def test_all_failing_is_evaluation_error(self):
        from gradelab.llm_provider import LLMClient
        client = LLMClient([self._provider(error=RuntimeError("a")), self._provider(error=RuntimeError("b"))])
        with self.assertRaises(EvaluationError) as ctx:
            client.generate("hi")
        self.assertEqual(len(ctx.exception.details["errors"]), 2)

    def test_read_image_skips_text_only_providers(self):
        from gradelab.llm_provider import LLMClient
        text_only = self._provider(text="text")
        vision = self._provider(text="page text", vision=True)
        client = LLMClient([text_only, vision])
        self.assertEqual(client.read_image("abc", "read").text, "page text")
        text_only.read_image.assert_not_called()

    def test_generate_json_retries_then_defaults(self):
        from gradelab.llm_provider import LLMClient
        client = LLMClient([self._provider(text="not json at all")])
        self.assertEqual(client.generate_json("x", defaults={"answers": []}, max_retries=1), {"answers": []})

    def test_parse_json_text_extracts_outer_object(self):
        from gradelab.llm_provider import parse_json_text
        self.assertEqual(parse_json_text('Here you go: {"a": [1, 2]} thanks'), {"a": [1, 2]})
        self.assertEqual(parse_json_text("```json\n[1, 2]\n```"), [1, 2])
        with self.assertRaises(ValueError):
            parse_json_text("no json")

    def test_placeholder_keys_are_unavailable(self):
        from gradelab.llm_provider import OpenAIProvider
        self.assertFalse(OpenAIProvider("your_openai_api_key_here").is_available())

    @patch("openai.OpenAI")
    def test_openai_client_gets_request_timeout(self, mock_openai):
        from gradelab.llm_provider import OpenAIProvider
        OpenAIProvider("sk-test", timeout=30)._get_client()
        self.assertEqual(mock_openai.call_args.kwargs["timeout"], 30)

    @patch("anthropic.Anthropic")
    def test_claude_client_defaults_to_configured_timeout(self, mock_anthropic):
        from gradelab import config
        from gradelab.llm_provider import ClaudeProvider
        ClaudeProvider("sk-ant-test")._get_client()
        self.assertEqual(mock_anthropic.call_args.kwargs["timeout"], config.LLM_REQUEST_TIMEOUT_SEC)

    @patch("gradelab.llm_provider.requests.post")
    def test_ollama_request_timeout(self, mock_post):
        from gradelab.llm_provider import OllamaProvider
        mock_post.return_value.json.return_value = {"response": "hi"}
        OllamaProvider("http://localhost:11434", timeout=45).generate("hello")
        self.assertEqual(mock_post.call_args.kwargs["timeout"], 45)

    def test_gemini_request_timeout(self):
        from gradelab.llm_provider import GeminiProvider
        provider = GeminiProvider("g-key", timeout=20)
        provider._client = MagicMock()
        provider._client.generate_content.return_value = MagicMock(text="ok")
        provider.generate("hello")
        options = provider._client.generate_content.call_args.kwargs["request_options"]
        self.assertEqual(options, {"timeout": 20})

    def test_concurrent_first_use_builds_one_client(self):
        import threading
        import time
        from gradelab import llm_provider

        def slow_from_env():
            time.sleep(0.05)
            return MagicMock()

        results = []
        with patch.object(llm_provider, "_client_singleton", None), \
                patch.object(llm_provider.LLMClient, "from_env", side_effect=slow_from_env) as from_env:
            threads = [threading.Thread(target=lambda: results.append(llm_provider.get_llm_client()))
                       for _ in range(8)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
            self.assertEqual(from_env.call_count, 1)
        self.assertEqual(len({id(r) for r in results}), 1)


# ─────────────────────────────────────────────────────────
# Dual Storage Tests
# ─────────────────────────────────────────────────────────

class TestDualStorage(unittest.TestCase):

    def setUp(self):
        from gradelab.storage import DualStorage
        self.supabase = MagicMock()
        self.supabase.public_url.return_value = "https://x.supabase.co/storage/v1/object/public/test-papers/a/b.pdf"
        self.appwrite = MagicMock()
        self.appwrite.is_configured.return_value = True
        self.appwrite.upload.return_value = "aw-123"
        self.storage = DualStorage(self.supabase, self.appwrite)

    def test_upload_mirrors_to_appwrite(self):
        result = self.storage.upload("test-papers", "a/b.pdf", b"%PDF", "application/pdf")
        self.assertTrue(result.ok)
        self.assertEqual(result.appwrite_file_id, "aw-123")
        self.assertTrue(result.public_url.startswith("https://x.supabase.co"))
        self.appwrite.upload.assert_called_once_with("test-papers", "a/b.pdf", b"%PDF", "application/pdf")

    def test_appwrite_failure_does_not_fail_upload(self):
        self.appwrite.upload.side_effect = RuntimeError("appwrite down")
        result = self.storage.upload("test-papers", "a/b.pdf", b"%PDF", "application/pdf")
        self.assertTrue(result.ok)
        self.assertIsNone(result.appwrite_file_id)

    def test_supabase_failure_is_reported(self):
        self.supabase.upload.side_effect = RuntimeError("bucket not found")
        result = self.storage.upload("test-papers", "a/b.pdf", b"%PDF", "application/pdf")
        self.assertFalse(result.ok)
        self.assertEqual(result.public_url, "")
        self.assertIn("bucket not found", result.error)
        self.appwrite.upload.assert_not_called()

    def test_unmapped_bucket_is_not_mirrored(self):
        self.storage.upload("scratch", "x.txt", b"x", "text/plain")
        self.appwrite.upload.assert_not_called()

    def test_delete_collects_errors_per_storage(self):
        self.appwrite.delete.side_effect = RuntimeError("gone")
        result = self.storage.delete("student-sheets", "s/1.png", appwrite_file_id="aw-1")
        self.assertFalse(result.success)
        self.assertEqual(result.errors[0]["storage"], "appwrite")
        self.supabase.remove.assert_called_once_with("student-sheets", ["s/1.png"])

    def test_delete_without_file_id_skips_appwrite(self):
        result = self.storage.delete("student-sheets", "s/1.png")
        self.assertTrue(result.success)
        self.appwrite.delete.assert_not_called()

    def test_path_from_public_url(self):
        from gradelab.storage import path_from_public_url
        url = "https://x.supabase.co/storage/v1/object/public/test-papers/test-papers/t1/my%20file.pdf?"
        self.assertEqual(path_from_public_url(url, "test-papers"), "test-papers/t1/my file.pdf")
        self.assertIsNone(path_from_public_url(url, "other"))

    def test_supabase_upload_sends_string_options(self):
        from gradelab.storage import SupabaseStorage
        client = MagicMock()
        SupabaseStorage("https://x.supabase.co", "key", client=client).upload("b", "p", b"d", "image/png", upsert=False)
        _, _, options = client.storage.from_.return_value.upload.call_args.args
        self.assertEqual(options, {"content-type": "image/png", "cache-control": "3600", "upsert": "false"})

    def test_unconfigured_supabase(self):
        from gradelab.storage import SupabaseStorage
        with self.assertRaises(ConfigurationError):
            SupabaseStorage("", "").download("b", "p")

    def test_list_appwrite_files_uses_mirror_bucket(self):
        self.appwrite.list_files.return_value = [{"$id": "aw-1"}]
        files = self.storage.list_appwrite_files("test-papers")
        self.assertEqual(files, [{"$id": "aw-1"}])
        self.appwrite.list_files.assert_called_once_with(self.storage.bucket_mapping["test-papers"])
        self.assertEqual(self.storage.list_appwrite_files("scratch"), [])

    def test_list_appwrite_files_without_appwrite(self):
        from gradelab.storage import DualStorage
        self.assertEqual(DualStorage(self.supabase, None).list_appwrite_files("test-papers"), [])

    def test_debug_info(self):
        self.supabase.url = "https://x.supabase.co"
        info = self.storage.debug_info("test-papers", "a/b.pdf")
        self.assertTrue(info["appwrite_configured"])
        self.assertEqual(info["appwrite_bucket"], self.storage.bucket_mapping["test-papers"])
        self.assertEqual(info["appwrite_file_name"], "a_b.pdf_<id>")
        self.appwrite.is_configured.return_value = False
        info = self.storage.debug_info("test-papers", "a/b.pdf")
        self.assertIsNone(info["appwrite_bucket"])
        self.assertIsNone(info["appwrite_file_name"])


class TestEnsureBucket(unittest.TestCase):

    def test_supabase_existing_bucket_is_left_alone(self):
        from types import SimpleNamespace
        from gradelab.storage import SupabaseStorage
        client = MagicMock()
        client.storage.list_buckets.return_value = [SimpleNamespace(name="test-papers", id="test-papers")]
        self.assertFalse(SupabaseStorage("https://x", "k", client=client).ensure_bucket("test-papers"))
        client.storage.create_bucket.assert_not_called()

    def test_supabase_missing_bucket_is_created_with_limit(self):
        from gradelab.storage import SupabaseStorage
        client = MagicMock()
        client.storage.list_buckets.return_value = []
        created = SupabaseStorage("https://x", "k", client=client).ensure_bucket(
            "student-sheets", public=True, file_size_limit=1024)
        self.assertTrue(created)
        client.storage.create_bucket.assert_called_once_with(
            "student-sheets", options={"public": True, "file_size_limit": 1024})

    def test_appwrite_conflict_means_exists(self):
        from appwrite.exception import AppwriteException
        from gradelab.storage import AppwriteStorage
        service = MagicMock()
        service.create_bucket.side_effect = AppwriteException("Bucket already exists", 409)
        storage = AppwriteStorage("https://aw", "proj", service=service)
        self.assertFalse(storage.ensure_bucket("test_papers", maximum_file_size=1024))

    def test_appwrite_other_errors_propagate(self):
        from appwrite.exception import AppwriteException
        from gradelab.storage import AppwriteStorage
        service = MagicMock()
        service.create_bucket.side_effect = AppwriteException("Unauthorized", 401)
        storage = AppwriteStorage("https://aw", "proj", service=service)
        with self.assertRaises(AppwriteException):
            storage.ensure_bucket("test_papers", maximum_file_size=1024)

    def test_appwrite_created(self):
        from gradelab.storage import AppwriteStorage
        service = MagicMock()
        storage = AppwriteStorage("https://aw", "proj", service=service)
        self.assertTrue(storage.ensure_bucket("test_papers", maximum_file_size=1024, allowed_extensions=["pdf"]))
        kwargs = service.create_bucket.call_args.kwargs
        self.assertEqual(kwargs["bucket_id"], "test_papers")
        self.assertEqual(kwargs["allowed_file_extensions"], ["pdf"])


# ─────────────────────────────────────────────────────────
# OCR Helper Tests
# ─────────────────────────────────────────────────────────

class TestOCRHelpers(unittest.TestCase):

    def test_data_url_is_unwrapped(self):
        from gradelab.ocr_module import image_url_to_base64
        self.assertEqual(image_url_to_base64("data:image/png;base64,QUJD"), "QUJD")

    @patch("gradelab.ocr_module.requests.get")
    def test_download_failure_is_extraction_error(self, mock_get):
        import requests
        from gradelab.ocr_module import image_url_to_base64
        mock_get.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(ExtractionError) as ctx:
            image_url_to_base64("https://example.com/page.png")
        self.assertIn("Failed to convert image to base64", ctx.exception.message)

    def test_guess_mime_type(self):
        from gradelab.ocr_module import guess_mime_type
        self.assertEqual(guess_mime_type(png_b64()), "image/png")
        jpeg = base64.b64encode(b"\xff\xd8\xff\xe0" + b"\x00" * 60).decode()
        self.assertEqual(guess_mime_type(jpeg), "image/jpeg")

    def test_image_passes_through_as_single_page(self):
        from gradelab.ocr_module import file_to_page_images
        pages = file_to_page_images(base64.b64decode(png_b64()), filename="scan.png")
        self.assertEqual(len(pages), 1)

    def test_render_pdf_pages_rasterises_each_page(self):
        import fitz
        from gradelab.ocr_module import render_pdf_pages
        doc = fitz.open()
        for n in (1, 2):
            doc.new_page(width=595, height=842).insert_text((72, 72), f"Q{n}. Define work.")
        pdf = doc.tobytes()
        doc.close()

        pages = render_pdf_pages(pdf, dpi=72, max_width=300)
        self.assertEqual(len(pages), 2)
        image = Image.open(io.BytesIO(pages[0]))
        self.assertEqual(image.format, "PNG")
        self.assertEqual(image.mode, "L")
        self.assertLessEqual(image.width, 300)

    def test_vision_engine_uses_document_prompt(self):
        from gradelab.llm_provider import LLMResponse
        from gradelab.ocr_module import VisionLLMEngine
        client = MagicMock()
        client.read_image.return_value = LLMResponse(text=" page text ", provider="openai", model="m")
        result = VisionLLMEngine(client).recognize_b64(png_b64(), "student-sheet", "Focus on Q3")
        self.assertEqual(result.text, "page text")
        self.assertEqual(result.engine, "vision-openai")
        prompt = client.read_image.call_args.args[1]
        self.assertIn("Focus on Q3", prompt)


# ─────────────────────────────────────────────────────────
# Extraction Service Tests
# ─────────────────────────────────────────────────────────

class FakeOCR:
    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.calls = []

    def recognize_b64(self, image_b64, document_type="question", extra_instructions=None):
        from gradelab.ocr_module import OCRResult
        self.calls.append((image_b64, document_type, extra_instructions))
        if image_b64 in self.fail_on:
            raise RuntimeError("vision model refused")
        return OCRResult(text=f"text of {image_b64}", confidence=0.9, engine="fake")


class TestExtractionService(unittest.TestCase):

    def setUp(self):
        self.db = make_session()
        self.paper = db_models.TestPaper(title="Unit 1 - Question Paper", paper_type="question")
        self.sheet_owner = db_models.Student(name="A", roll_number="1", gr_number="GR1")
        self.db.add_all([self.paper, self.sheet_owner])
        self.db.commit()

    def tearDown(self):
        self.db.close()

    def _service(self, ocr, **kw):
        from gradelab.extraction import ExtractionService
        kw.setdefault("group_delay_sec", 0)
        return ExtractionService(self.db, ocr_engine=ocr, **kw)

    def test_pages_in_order_with_error_block(self):
        ocr = FakeOCR(fail_on={"p3"})
        result = self._service(ocr, batch_size=2, max_concurrent_batches=1).extract_text(
            "question", base64_images=["p1", "p2", "p3", "p4", "p5"], paper_id=self.paper.id,
        )
        text = result["extracted_text"]
        self.assertTrue(result["success"])
        self.assertTrue(text.startswith("=== PAGE 1 ===\n\ntext of p1"))
        self.assertIn("=== PAGE 3 ===\n\n[Error processing page 3: vision model refused]", text)
        self.assertLess(text.index("PAGE 4"), text.index("PAGE 5"))

        self.db.refresh(self.paper)
        self.assertEqual(self.paper.status, "completed")
        self.assertTrue(self.paper.has_extracted_text)
        self.assertEqual(self.paper.extracted_text, text)

    def test_progress_written_after_each_group(self):
        from gradelab.extraction import progress_text
        writes = []
        service = self._service(FakeOCR(), batch_size=1, max_concurrent_batches=2, group_delay_sec=0.5,
                                sleep=MagicMock())
        original = service._write_progress
        service._write_progress = lambda row, text: (writes.append(text), original(row, text))
        service.extract_text("question", base64_images=["a", "b", "c"], paper_id=self.paper.id)
        self.assertEqual(writes, [progress_text(2, 3), progress_text(3, 3)])
        self.assertEqual(writes[0], "Processing... 67% complete (2 of 3 pages)")
        service._sleep.assert_called_once_with(0.5)

    def test_data_urls_are_stripped_and_prompt_forwarded(self):
        ocr = FakeOCR()
        self._service(ocr).extract_text("question", base64_images=["data:image/png;base64,QUJD"],
                                        paper_id=self.paper.id, prompt="Include marks")
        self.assertEqual(ocr.calls[0], ("QUJD", "question", "Include marks"))

    def test_validation_errors(self):
        service = self._service(FakeOCR())
        with self.assertRaises(ValidationError):
            service.extract_text("question", paper_id=self.paper.id)
        with self.assertRaises(ValidationError):
            service.extract_text("question", image_urls=[], paper_id=self.paper.id)
        with self.assertRaises(ValidationError):
            service.extract_text("student-sheet", base64_images=["x"])
        with self.assertRaises(ValidationError):
            service.extract_text("answer", base64_images=["x"])
        with self.assertRaises(ValidationError):
            service.extract_text("poster", base64_images=["x"], paper_id=self.paper.id)

    def test_missing_target_is_not_found(self):
        with self.assertRaises(NotFoundError):
            self._service(FakeOCR()).extract_text("student-sheet", base64_images=["x"], sheet_id="nope")

    def test_empty_text_marks_failed(self):
        ocr = MagicMock()
        from gradelab.ocr_module import OCRResult
        ocr.recognize_b64.return_value = OCRResult(text="", confidence=0.0, engine="fake")
        service = self._service(ocr)
        with patch("gradelab.extraction.page_block", return_value=""):
            with self.assertRaises(ExtractionError):
                service.extract_text("question", base64_images=["x"], paper_id=self.paper.id)
        self.db.refresh(self.paper)
        self.assertEqual(self.paper.status, "failed")
        self.assertFalse(self.paper.has_extracted_text)

    def test_chapter_material_writes_text_content(self):
        material = db_models.ChapterMaterial(title="Optics")
        self.db.add(material)
        self.db.commit()
        self._service(FakeOCR()).extract_text("chapter-material", base64_images=["m1"], sheet_id=material.id)
        self.db.refresh(material)
        self.assertEqual(material.extraction_status, "completed")
        self.assertIn("text of m1", material.text_content)

    def test_extract_sheet_downloads_and_rasterizes(self):
        test = db_models.Test(title="T", date="2024-01-01", subject_id="s", class_id="c")
        self.db.add(test)
        self.db.commit()
        sheet = db_models.StudentAnswerSheet(student_id=self.sheet_owner.id, test_id=test.id,
                                             storage_path="student-sheets/t/a.png")
        self.db.add(sheet)
        self.db.commit()

        storage = MagicMock()
        storage.download.return_value = base64.b64decode(png_b64())
        ocr = FakeOCR()
        self._service(ocr, storage=storage).extract_sheet(sheet.id)

        storage.download.assert_called_once_with("student-sheets", "student-sheets/t/a.png")
        self.assertEqual(ocr.calls[0][1], "student-sheet")
        self.db.refresh(sheet)
        self.assertTrue(sheet.has_extracted_text)

    def test_slow_page_becomes_timeout_block(self):
        import threading
        release = threading.Event()

        class SlowOCR(FakeOCR):
            def recognize_b64(self, image_b64, document_type="question", extra_instructions=None):
                if image_b64 == "slow":
                    release.wait(5)
                return super().recognize_b64(image_b64, document_type, extra_instructions)

        try:
            result = self._service(SlowOCR(), batch_size=2, max_concurrent_batches=1,
                                   page_timeout_sec=0.2).extract_text(
                "question", base64_images=["p1", "slow"], paper_id=self.paper.id)
        finally:
            release.set()
        text = result["extracted_text"]
        self.assertIn("text of p1", text)
        self.assertIn("=== PAGE 2 ===\n\n[Error processing page 2: Request timed out after 0 seconds]", text)

    def test_collect_reports_timeout_and_failure(self):
        from concurrent.futures import Future
        service = self._service(FakeOCR(), page_timeout_sec=60)

        pending = Future()
        self.assertEqual(service._collect(4, pending),
                         "=== PAGE 4 ===\n\n[Error processing page 4: Request timed out after 60 seconds]")
        self.assertTrue(pending.cancelled())

        failed = Future()
        failed.set_exception(RuntimeError("rate limited"))
        self.assertEqual(service._collect(5, failed),
                         "=== PAGE 5 ===\n\n[Error processing page 5: rate limited]")


# ─────────────────────────────────────────────────────────
# Grading Service Tests
# ─────────────────────────────────────────────────────────

EVALUATION = {
    "student_name": "Asha",
    "answers": [answer(1, 4, 5), answer(2, 3, 5)],
    "overall_performance": {},
}


class TestGradingService(unittest.TestCase):

    def setUp(self):
        self.db = make_session()
        klass = db_models.SchoolClass(name="10A", year="2024")
        subject = db_models.Subject(name="Physics", code="PHY")
        self.db.add_all([klass, subject])
        self.db.commit()
        self.student = db_models.Student(name="Asha", roll_number="12", gr_number="GR12", class_id=klass.id)
        self.test = db_models.Test(title="Unit 1", date="2024-02-01", max_marks=10,
                                   subject_id=subject.id, class_id=klass.id)
        self.db.add_all([self.student, self.test])
        self.db.commit()
        self.question = db_models.TestPaper(title="Unit 1 - Question Paper", paper_type="question",
                                            test_id=self.test.id, extracted_text="Q1\nQ2", has_extracted_text=True)
        self.answer = db_models.TestPaper(title="Unit 1 - Answer Key", paper_type="answer",
                                          test_id=self.test.id, extracted_text="A1\nA2", has_extracted_text=True)
        self.sheet = db_models.StudentAnswerSheet(student_id=self.student.id, test_id=self.test.id,
                                                  extracted_text="my answers", has_extracted_text=True)
        self.db.add_all([self.question, self.answer, self.sheet])
        self.db.commit()

        self.engine = MagicMock()
        self.engine.evaluate.return_value = EVALUATION
        self.llm = MagicMock()
        from gradelab.grading_service import GradingService
        self.service = GradingService(self.db, engine=self.engine, llm_evaluator=self.llm)

    def tearDown(self):
        self.db.close()

    def _status(self):
        return self.db.query(db_models.AutoGradeStatus).filter_by(
            student_id=self.student.id, test_id=self.test.id).first()

    def test_evaluate_student_completes_and_syncs_result(self):
        out = self.service.evaluate_student(self.test.id, self.student.id)
        self.assertEqual(out["status"], "completed")
        self.assertEqual(out["score"], 7)
        self.assertEqual(out["feedback"], "Scored 7 out of 10")

        info = self.engine.evaluate.call_args.args[3]
        self.assertEqual((info.name, info.class_name, info.subject), ("Asha", "10A", "Physics"))

        result = self.db.query(db_models.TestResult).filter_by(test_id=self.test.id).one()
        self.assertEqual(result.marks_obtained, 7)

    def test_result_is_clamped_to_test_max_marks(self):
        self.test.max_marks = 20
        self.db.commit()
        self.engine.evaluate.return_value = {"answers": [answer(1, 45, 50)], "overall_performance": {}}
        out = self.service.evaluate_student(self.test.id, self.student.id)
        self.assertEqual(out["score"], 45)
        result = self.db.query(db_models.TestResult).filter_by(test_id=self.test.id).one()
        self.assertEqual(result.marks_obtained, 20.0)

    def test_rubric_is_passed_to_engine(self):
        self.db.add(db_models.Rubric(test_id=self.test.id, accuracy=5))
        self.db.commit()
        self.service.evaluate_student(self.test.id, self.student.id)
        rubric = self.engine.evaluate.call_args.args[4]
        self.assertEqual(rubric["accuracy"], 5)
        self.assertEqual(rubric["language"], 3)

    def test_engine_failure_marks_failed(self):
        self.engine.evaluate.side_effect = EvaluationError("All LLM providers failed")
        with self.assertRaises(EvaluationError):
            self.service.evaluate_student(self.test.id, self.student.id)
        status = self._status()
        self.assertEqual(status.status, "failed")
        self.assertEqual(status.feedback, "All LLM providers failed")

    def test_unextracted_sheet_fails(self):
        self.sheet.has_extracted_text = False
        self.db.commit()
        with self.assertRaises(ValidationError):
            self.service.evaluate_student(self.test.id, self.student.id)
        self.assertEqual(self._status().status, "failed")
        self.engine.evaluate.assert_not_called()

    def test_missing_sheet(self):
        self.db.delete(self.sheet)
        self.db.commit()
        with self.assertRaises(ValidationError) as ctx:
            self.service.evaluate_student(self.test.id, self.student.id)
        self.assertEqual(ctx.exception.message, "No answer sheet uploaded for this student")

    def test_generated_key_used_when_answer_paper_missing(self):
        self.db.delete(self.answer)
        self.question.generated_answer_key = "generated key"
        self.db.commit()
        self.service.evaluate_student(self.test.id, self.student.id)
        self.assertEqual(self.engine.evaluate.call_args.args[1], "generated key")

    def test_missing_answer_key(self):
        self.db.delete(self.answer)
        self.db.commit()
        with self.assertRaises(ValidationError):
            self.service.answer_key_text(self.test.id)

    def test_generate_answer_key_stores_result(self):
        self.llm.generate_answer_key.return_value = "1. Force = ma"
        self.assertEqual(self.service.generate_answer_key(self.question.id), "1. Force = ma")
        self.db.refresh(self.question)
        self.assertEqual(self.question.generated_answer_key, "1. Force = ma")

    def test_generate_answer_key_needs_text(self):
        self.question.extracted_text = None
        self.db.commit()
        with self.assertRaises(ValidationError):
            self.service.generate_answer_key(self.question.id)
        with self.assertRaises(NotFoundError):
            self.service.generate_answer_key("missing")

    def test_grading_status_lists_class_students(self):
        other = db_models.Student(name="Bala", roll_number="13", gr_number="GR13", class_id=self.student.class_id)
        self.db.add(other)
        self.db.commit()
        rows = self.service.grading_status(self.test.id)
        self.assertEqual([r["student_name"] for r in rows], ["Asha", "Bala"])
        self.assertTrue(rows[0]["has_extracted_text"])
        self.assertEqual(rows[1]["status"], "pending")
        self.assertIsNone(rows[1]["answer_sheet_id"])

    def test_replace_answer_sheet_resets_status(self):
        self.service.evaluate_student(self.test.id, self.student.id)
        old_id = self.sheet.id
        new = self.service.replace_answer_sheet(self.test.id, self.student.id, "https://x/new.png", "p/new.png")
        self.assertNotEqual(new.id, old_id)
        status = self._status()
        self.assertEqual(status.status, "pending")
        self.assertEqual(status.answer_sheet_id, new.id)
        self.assertIsNone(status.score)
        self.assertEqual(self.db.query(db_models.StudentAnswerSheet).count(), 1)


# ─────────────────────────────────────────────────────────
# Metrics Tests
# ─────────────────────────────────────────────────────────

class TestMetrics(unittest.TestCase):

    def test_perfect_agreement(self):
        from gradelab.metrics import compute_metrics
        scores = [5.0, 7.0, 9.0, 3.0]
        report = compute_metrics(scores, scores)
        self.assertAlmostEqual(report.mae, 0.0, places=4)
        self.assertAlmostEqual(report.pearson_r, 1.0, places=4)
        self.assertAlmostEqual(report.accuracy_within_1, 1.0, places=4)

    def test_mae_computation(self):
        from gradelab.metrics import compute_metrics
        report = compute_metrics([5.0, 7.0, 9.0], [6.0, 7.0, 8.0])
        self.assertAlmostEqual(report.mae, 2.0 / 3.0, places=4)

    def test_accuracy_within_1(self):
        from gradelab.metrics import compute_metrics
        report = compute_metrics([7.0, 8.0, 4.0], [8.0, 8.0, 8.0])
        self.assertAlmostEqual(report.accuracy_within_1, 2.0 / 3.0, places=4)

    def test_length_mismatch(self):
        from gradelab.metrics import compute_metrics
        with self.assertRaises(ValueError):
            compute_metrics([1.0], [1.0, 2.0])

    def test_class_overview(self):
        from gradelab.metrics import class_overview
        evaluations = [{"answers": [answer(1, 8, 10)]}, {"answers": [answer(1, 3, 10)]}]
        overview = class_overview(evaluations)
        self.assertEqual(overview["graded"], 2)
        self.assertEqual(overview["average_percentage"], 55.0)
        self.assertEqual(overview["highest_percentage"], 80.0)
        self.assertEqual(overview["pass_rate"], 50.0)
        self.assertEqual(overview["grade_distribution"]["B"], 1)
        self.assertEqual(overview["grade_distribution"]["F"], 1)

    def test_class_overview_empty(self):
        from gradelab.metrics import class_overview
        self.assertEqual(class_overview([])["graded"], 0)

    def test_question_analysis(self):
        from gradelab.metrics import question_analysis
        evaluations = [
            {"answers": [answer(1, 2, 2), answer(2, 0, 4)]},
            {"answers": [answer(1, 1, 2)]},
        ]
        rows = question_analysis(evaluations)
        self.assertEqual(rows[0], {"question_no": 1, "attempts": 2, "average_percentage": 75.0, "full_marks": 1})
        self.assertEqual(rows[1]["average_percentage"], 0.0)


# ─────────────────────────────────────────────────────────
# CSV Tests
# ─────────────────────────────────────────────────────────

class TestCSV(unittest.TestCase):

    def test_parse_skips_blank_lines_and_pads(self):
        from gradelab.csv_import import parse_csv
        rows = parse_csv("name, roll\n\n Asha , 12\nBala\n")
        self.assertEqual(rows, [{"name": "Asha", "roll": "12"}, {"name": "Bala", "roll": ""}])

    def test_quoted_commas_stay_in_one_field(self):
        from gradelab.csv_import import parse_csv, student_csv_template, validate_student_csv
        header = student_csv_template().splitlines()[0]
        columns = header.split(",")
        values = {c: "" for c in columns}
        values.update(name='"Doe, John"', gr_number="GR9", roll_number="9", year="2024",
                      email="john@example.com", phone="5550100", gender="Male", date_of_birth="2008-04-01",
                      address='"12 Main St, Apt 4"')
        content = header + "\n" + ",".join(values[c] for c in columns) + "\n"

        rows = parse_csv(content)
        self.assertEqual(rows[0]["name"], "Doe, John")
        self.assertEqual(rows[0]["address"], "12 Main St, Apt 4")
        self.assertEqual(rows[0]["year"], "2024")
        valid, errors = validate_student_csv(rows)
        self.assertTrue(valid, errors)

    def test_parse_without_headers(self):
        from gradelab.csv_import import parse_csv
        self.assertEqual(parse_csv("a,b", headers=False), [{"column1": "a", "column2": "b"}])

    def test_template_validates(self):
        from gradelab.csv_import import parse_csv, student_csv_template, validate_student_csv
        valid, errors = validate_student_csv(parse_csv(student_csv_template()))
        self.assertTrue(valid, errors)

    def test_validation_messages(self):
        from gradelab.csv_import import validate_student_csv
        self.assertEqual(validate_student_csv([]), (False, ["CSV file is empty"]))
        row = {"name": "A", "gr_number": "G", "roll_number": "1", "year": "2024", "email": "bad",
               "phone": "1", "gender": "M", "date_of_birth": "01/02/2003"}
        valid, errors = validate_student_csv([row])
        self.assertFalse(valid)
        self.assertIn("Row 1: Invalid email format", errors)
        self.assertIn("Row 1: Date of birth must be in YYYY-MM-DD format", errors)
        self.assertIn("Row 1: Gender must be one of: Male, Female, Other", errors)

    def test_missing_headers(self):
        from gradelab.csv_import import validate_student_csv
        valid, errors = validate_student_csv([{"name": "A"}])
        self.assertTrue(errors[0].startswith("Missing required headers: gr_number"))

    def test_results_to_csv(self):
        from gradelab.csv_import import results_to_csv
        text = results_to_csv([{"name": "Asha", "gr_number": "G1", "roll_number": "12", "marks_obtained": 7.5}])
        self.assertEqual(text, "name,gr_number,roll_number,marks_obtained\nAsha,G1,12,7.5\n")


# ─────────────────────────────────────────────────────────
# Script Tests
# ─────────────────────────────────────────────────────────
class TestMigrationScript(unittest.TestCase):

    def setUp(self):
        sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "scripts"))
        import migrate_projects
        self.mod = migrate_projects

    @staticmethod
    def _source(rows):
        """A source client whose id-ordered .range(start, end) reads slice `rows`."""
        source = MagicMock()
        query = source.table.return_value.select.return_value.order.return_value

        def page(start, end):
            return MagicMock(**{"execute.return_value.data": rows[start:end + 1]})

        query.range.side_effect = page
        return source

    def test_copies_in_dependency_order(self):
        source, target = self._source([{"id": "1"}]), MagicMock()
        self.assertTrue(self.mod.migrate(source, target, ["students", "classes"]))
        self.assertEqual([c.args[0] for c in target.table.call_args_list], ["classes", "students"])
        target.table.return_value.upsert.assert_called_with([{"id": "1"}], on_conflict="id")

    def test_reads_past_the_first_thousand_rows(self):
        rows = [{"id": f"{i:05d}"} for i in range(1500)]
        source, target = self._source(rows), MagicMock()
        self.assertTrue(self.mod.migrate(source, target, ["students"]))

        ranges = [c.args for c in source.table.return_value.select.return_value.order.return_value.range.call_args_list]
        self.assertEqual(ranges, [(0, 999), (1000, 1999)])
        source.table.return_value.select.return_value.order.assert_called_with("id")
        upserted = [r for c in target.table.return_value.upsert.call_args_list for r in c.args[0]]
        self.assertEqual(len(upserted), 1500)
        self.assertEqual(upserted[-1], {"id": "01499"})

    def test_exact_page_multiple_stops_on_empty_page(self):
        rows = [{"id": str(i)} for i in range(4)]
        self.assertEqual(self.mod.fetch_all(self._source(rows), "classes", page_size=2), rows)

    def test_stops_at_first_failure(self):
        source, target = self._source([{"id": "1"}]), MagicMock()
        target.table.return_value.upsert.side_effect = RuntimeError("permission denied")
        self.assertFalse(self.mod.migrate(source, target, ["classes", "students"]))
        self.assertEqual(target.table.call_count, 1)

    def test_dry_run_writes_nothing(self):
        source, target = self._source([{"id": "1"}]), MagicMock()
        self.assertTrue(self.mod.migrate(source, target, ["classes"], dry_run=True))
        target.table.assert_not_called()

    def test_analysis_tables_follow_their_parents(self):
        order = self.mod.MIGRATION_ORDER
        self.assertLess(order.index("subjects"), order.index("course_outcomes"))
        self.assertLess(order.index("test_papers"), order.index("analysis_history"))
        self.assertLess(order.index("course_outcomes"), order.index("generated_questions"))


class TestCreateBucketsScript(unittest.TestCase):

    def setUp(self):
        sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "scripts"))
        import create_buckets
        self.mod = create_buckets

    def test_existing_appwrite_buckets_are_not_failures(self):
        from appwrite.exception import AppwriteException
        from gradelab import config
        from gradelab.storage import AppwriteStorage
        service = MagicMock()
        service.create_bucket.side_effect = AppwriteException("Bucket already exists", 409)
        failures = self.mod.create_appwrite_buckets(AppwriteStorage("https://aw", "proj", service=service))
        self.assertEqual(failures, [])
        self.assertEqual(service.create_bucket.call_count, len(config.APPWRITE_BUCKETS))

    def test_supabase_failures_are_collected(self):
        storage = MagicMock()
        storage.ensure_bucket.side_effect = [True, RuntimeError("forbidden"), False]
        with patch.object(self.mod.config, "SUPABASE_BUCKETS", {"A": "a", "B": "b", "C": "c"}):
            failures = self.mod.create_supabase_buckets(storage)
        self.assertEqual(failures, [("supabase", "b")])

    def test_main_exit_code(self):
        with patch.object(self.mod, "create_supabase_buckets", return_value=[]), \
                patch.object(self.mod.config, "appwrite_configured", return_value=False):
            self.assertEqual(self.mod.main([]), 0)
        with patch.object(self.mod, "create_supabase_buckets", return_value=[("supabase", "test-papers")]):
            self.assertEqual(self.mod.main(["--supabase-only"]), 1)


# ─────────────────────────────────────────────────────────
# Worker Pool Tests
# ─────────────────────────────────────────────────────────

class TestWorkers(unittest.TestCase):

    def test_pool_restarts_after_shutdown(self):
        import asyncio
        from gradelab import workers
        first = workers.get_executor()
        workers.shutdown(wait=True)
        self.assertTrue(first._shutdown)
        self.assertEqual(asyncio.run(workers.run_blocking(sum, [1, 2, 3])), 6)
        self.assertIsNot(workers.get_executor(), first)

    def test_shutdown_without_pool_is_a_no_op(self):
        from gradelab import workers
        workers.shutdown()
        workers.shutdown()
        self.assertIsNotNone(workers.get_executor())


# ─────────────────────────────────────────────────────────
# Paper Analysis Tests
# ─────────────────────────────────────────────────────────

ANALYSIS_RESPONSE = {
    "questionAnalysis": [
        {"questionNumber": 2, "questionText": "Derive v = u + at", "difficulty": "Hard",
         "courseOutcome": "co2", "bloomsLevel": "Apply"},
        {"questionNumber": 1, "questionText": "State Newton's first law", "difficulty": "easy",
         "courseOutcome": "CO1", "bloomsLevel": "remember"},
        {"questionNumber": 3, "questionText": "Judge the experiment", "difficulty": "tricky",
         "courseOutcome": "CO9", "bloomsLevel": "Evaluate"},
        {"questionNumber": 4, "questionText": "Explain inertia", "difficulty": "medium",
         "courseOutcome": "CO1", "bloomsLevel": "understand"},
    ],
    "analysisDetails": {"bloomsAnalysis": "Mostly lower-order questions."},
    "improvementSuggestions": [
        {"title": "Add create-level questions", "description": "Ask for an experiment design."},
        "Balance difficulty",
    ],
}


class TestPaperAnalysis(unittest.TestCase):

    def setUp(self):
        self.db = make_session()
        self.subject = db_models.Subject(name="Physics", code="PHY")
        self.db.add(self.subject)
        self.db.commit()
        self.co1 = db_models.CourseOutcome(subject_id=self.subject.id, description="Apply Newton's laws")
        self.db.add(self.co1)
        self.db.commit()
        self.co2 = db_models.CourseOutcome(subject_id=self.subject.id, description="Solve kinematics problems")
        self.db.add(self.co2)
        self.db.commit()
        self.paper = db_models.TestPaper(title="Unit 1 - Question Paper", subject_id=self.subject.id,
                                         extracted_text="Q1. State Newton's first law.\nQ2. Derive v = u + at.",
                                         has_extracted_text=True)
        self.db.add(self.paper)
        self.db.commit()

        self.client = MagicMock()
        self.client.is_configured = True
        self.client.generate_json.return_value = ANALYSIS_RESPONSE
        from gradelab.analysis import PaperAnalyzer
        self.analyzer = PaperAnalyzer(self.db, llm_client=self.client)

    def tearDown(self):
        self.db.close()

    def test_analyze_paper_stores_completed_run(self):
        record = self.analyzer.analyze_paper(self.paper.id, user_id="u1")
        self.assertEqual(record.status, "completed")
        self.assertEqual(record.title, "Analysis of Unit 1 - Question Paper")
        self.assertIsNotNone(record.completed_at)
        self.assertEqual(record.user_id, "u1")

        data = record.analysis_data
        self.assertEqual([q["number"] for q in data["questions"]], [1, 2, 3, 4])
        self.assertEqual(data["questions"][1], {"number": 2, "text": "Derive v = u + at", "difficulty": "hard",
                                                "bloomsLevel": "apply", "courseOutcome": "CO2"})
        self.assertEqual(data["questions"][2]["difficulty"], "medium")
        self.assertIsNone(data["questions"][2]["courseOutcome"])
        self.assertEqual(data["bloomsDistribution"],
                         {"remember": 25.0, "understand": 25.0, "apply": 25.0, "analyze": 0.0,
                          "evaluate": 25.0, "create": 0.0})
        self.assertEqual(data["difficultyDistribution"], {"easy": 25.0, "medium": 50.0, "hard": 25.0})
        self.assertEqual(data["courseOutcomeDistribution"], {"CO1": 50.0, "CO2": 25.0})
        self.assertEqual((data["bloomsLevelsCovered"], data["totalBloomsLevels"]), (4, 6))
        self.assertEqual((data["courseOutcomesCovered"], data["totalCourseOutcomes"]), (2, 2))
        self.assertEqual(data["summary"]["bloomsAnalysis"], "Mostly lower-order questions.")
        self.assertEqual(data["suggestions"][1], {"title": "Balance difficulty", "description": ""})

    def test_prompt_lists_course_outcomes_in_creation_order(self):
        self.analyzer.analyze_paper(self.paper.id)
        prompt = self.client.generate_json.call_args.args[0]
        self.assertIn("CO1: Apply Newton's laws\nCO2: Solve kinematics problems", prompt)
        self.assertIn("Derive v = u + at.", prompt)

    def test_outcomes_fall_back_to_the_test_subject(self):
        klass = db_models.SchoolClass(name="10A", year="2024")
        self.db.add(klass)
        self.db.commit()
        test = db_models.Test(title="Unit 1", date="2024-02-01", subject_id=self.subject.id, class_id=klass.id)
        self.db.add(test)
        self.db.commit()
        self.paper.subject_id = None
        self.paper.test_id = test.id
        self.db.commit()
        record = self.analyzer.analyze_paper(self.paper.id)
        self.assertEqual(record.subject_id, self.subject.id)
        self.assertEqual(record.analysis_data["totalCourseOutcomes"], 2)

    def test_long_paper_is_truncated(self):
        self.paper.extracted_text = "Q1. " + "x" * 9000
        self.db.commit()
        self.analyzer.analyze_paper(self.paper.id)
        prompt = self.client.generate_json.call_args.args[0]
        self.assertIn("...(truncated for length)", prompt)
        self.assertNotIn("x" * 8001, prompt)

    def test_llm_failure_marks_run_failed(self):
        self.client.generate_json.side_effect = EvaluationError("LLM returned invalid JSON: boom")
        with self.assertRaises(EvaluationError):
            self.analyzer.analyze_paper(self.paper.id)
        record = self.db.query(db_models.PaperAnalysis).one()
        self.assertEqual(record.status, "failed")
        self.assertEqual(record.error, "LLM returned invalid JSON: boom")

    def test_no_questions_is_a_failure(self):
        self.client.generate_json.return_value = {"questionAnalysis": []}
        with self.assertRaises(EvaluationError):
            self.analyzer.analyze_paper(self.paper.id)
        self.assertEqual(self.db.query(db_models.PaperAnalysis).one().status, "failed")

    def test_unextracted_paper_is_rejected_before_any_run(self):
        self.paper.has_extracted_text = False
        self.db.commit()
        with self.assertRaises(ValidationError):
            self.analyzer.analyze_paper(self.paper.id)
        with self.assertRaises(NotFoundError):
            self.analyzer.analyze_paper("missing")
        self.assertEqual(self.db.query(db_models.PaperAnalysis).count(), 0)

    def test_unconfigured_llm(self):
        self.client.is_configured = False
        with self.assertRaises(ConfigurationError):
            self.analyzer.analyze_paper(self.paper.id)
        self.client.generate_json.assert_not_called()
        self.assertEqual(self.db.query(db_models.PaperAnalysis).count(), 0)

    def test_render_analysis_pdf(self):
        import fitz
        from gradelab.analysis import render_analysis_pdf
        data = self.analyzer.analyze_paper(self.paper.id).analysis_data
        pdf = render_analysis_pdf(data, "Unit 1 - Question Paper")
        self.assertTrue(pdf.startswith(b"%PDF"))
        with fitz.open(stream=pdf, filetype="pdf") as doc:
            text = "".join(page.get_text() for page in doc)
            self.assertEqual(doc.metadata["title"], "Analysis Report - Unit 1 - Question Paper")
        self.assertIn("Paper Analysis Report", text)
        self.assertIn("Course Outcomes Mapped: 2/2", text)
        self.assertIn("Question 2: Derive v = u + at", text)
        self.assertIn("Add create-level questions", text)

    def test_long_report_spans_pages(self):
        import fitz
        from gradelab.analysis import build_analysis, render_analysis_pdf
        items = [{"questionNumber": n, "questionText": "Explain " * 30, "difficulty": "easy",
                  "bloomsLevel": "understand"} for n in range(1, 61)]
        pdf = render_analysis_pdf(build_analysis({"questionAnalysis": items}, {}), "Long paper")
        with fitz.open(stream=pdf, filetype="pdf") as doc:
            self.assertGreater(doc.page_count, 1)


# ─────────────────────────────────────────────────────────
# Question Generation Tests
# ─────────────────────────────────────────────────────────

def mcq_payload(n, answer_text="b"):
    return {"questions": [
        {"question": f"Question {i}?", "options": ["a", "b", "c", "d"], "correct_answer": answer_text,
         "bloom_level": "Understand", "course_outcome": "CO1"}
        for i in range(1, n + 1)
    ]}


class TestQuestionGeneration(unittest.TestCase):

    def setUp(self):
        self.db = make_session()
        self.subject = db_models.Subject(name="Physics", code="PHY")
        self.db.add(self.subject)
        self.db.commit()
        self.co1 = db_models.CourseOutcome(subject_id=self.subject.id, description="Describe motion")
        self.material = db_models.ChapterMaterial(subject_id=self.subject.id, title="Chapter 3 - Motion",
                                                  text_content="Velocity is the rate of change of displacement.",
                                                  has_extracted_text=True)
        self.db.add_all([self.co1, self.material])
        self.db.commit()

        self.client = MagicMock()
        self.client.is_configured = True
        self.sleep = MagicMock()
        from gradelab.analysis import QuestionGenerator
        self.generator = QuestionGenerator(self.db, llm_client=self.client, sleep=self.sleep)

    def tearDown(self):
        self.db.close()

    def test_generate_mcq_saves_rows(self):
        self.client.generate_json.return_value = mcq_payload(3)
        out = self.generator.generate(self.subject.id, "Kinematics", mcq_count=3, user_id="u1")
        self.assertEqual(len(out), 3)
        self.assertEqual(out[0]["options"][1], {"text": "b", "is_correct": True})
        self.assertEqual(out[0]["answer_text"], "b")
        self.assertEqual(out[0]["question_type"], "MCQ")
        self.assertEqual(out[0]["bloom_level"], "understand")
        self.assertEqual(out[0]["course_outcome_id"], self.co1.id)
        self.assertIsNone(out[0]["marks"])
        self.assertEqual(self.db.query(db_models.GeneratedQuestion).filter_by(topic="Kinematics").count(), 3)

    def test_large_requests_go_in_chunks_of_25(self):
        self.client.generate_json.side_effect = [mcq_payload(25), mcq_payload(5)]
        out = self.generator.generate(self.subject.id, "Kinematics", mcq_count=30, save=False)
        self.assertEqual(len(out), 30)
        prompts = [c.args[0] for c in self.client.generate_json.call_args_list]
        self.assertIn("Chunk: 1 of 2", prompts[0])
        self.assertIn("Generate exactly 5 multiple choice", prompts[1])
        self.assertEqual(self.db.query(db_models.GeneratedQuestion).count(), 0)

    def test_short_chunk_is_retried_with_backoff(self):
        self.client.generate_json.side_effect = [mcq_payload(2), mcq_payload(3)]
        out = self.generator.generate(self.subject.id, "Kinematics", mcq_count=3)
        self.assertEqual(len(out), 3)
        self.sleep.assert_called_once_with(2)

    def test_gives_up_after_three_attempts(self):
        self.client.generate_json.side_effect = [mcq_payload(1), EvaluationError("LLM returned invalid JSON"),
                                                 mcq_payload(1)]
        with self.assertRaises(EvaluationError) as ctx:
            self.generator.generate(self.subject.id, "Kinematics", mcq_count=3)
        self.assertIn("after 3 attempts", ctx.exception.message)
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [2, 4])
        self.assertEqual(self.db.query(db_models.GeneratedQuestion).count(), 0)

    def test_theory_marks_distribution_in_prompt(self):
        self.client.generate_json.return_value = {"questions": [
            {"question": "Define speed.", "marks": 1, "answer": "Distance per unit time."},
            {"question": "Derive the equations of motion.", "marks": "8", "answer": "..."},
        ]}
        out = self.generator.generate(self.subject.id, "Kinematics", question_type="theory",
                                      theory_marks={1: 1, 8: 1})
        self.assertEqual([q["marks"] for q in out], [1, 8])
        self.assertEqual(out[0]["question_type"], "Theory")
        self.assertIsNone(out[0]["options"])
        prompt = self.client.generate_json.call_args.args[0]
        self.assertIn("  - 1 mark questions: 1\n  - 2 mark questions: 0", prompt)
        self.assertIn("  - 8 mark questions: 1", prompt)

    def test_chapter_materials_ground_the_prompt(self):
        self.client.generate_json.return_value = mcq_payload(1)
        self.generator.generate(self.subject.id, "Motion", mcq_count=1, material_ids=[self.material.id],
                                blooms_taxonomy={"remember": 40, "apply": 60, "create": 0})
        prompt = self.client.generate_json.call_args.args[0]
        self.assertIn("## Chapter 3 - Motion", prompt)
        self.assertIn("Velocity is the rate of change of displacement.", prompt)
        self.assertIn("- Apply: 60%", prompt)
        self.assertNotIn("Create", prompt.split("Target Bloom's")[1].split("RULES")[0])
        self.assertIn("CO1: Describe motion", prompt)

    def test_without_materials_uses_common_knowledge(self):
        self.client.generate_json.return_value = mcq_payload(1)
        self.generator.generate(self.subject.id, "Motion", mcq_count=1)
        prompt = self.client.generate_json.call_args.args[0]
        self.assertIn("Base the questions on common knowledge about Motion in Physics.", prompt)

    def test_material_checks(self):
        pending = db_models.ChapterMaterial(subject_id=self.subject.id, title="Chapter 4")
        self.db.add(pending)
        self.db.commit()
        with self.assertRaises(ValidationError):
            self.generator.generate(self.subject.id, "Motion", mcq_count=1, material_ids=[pending.id])
        with self.assertRaises(NotFoundError):
            self.generator.generate(self.subject.id, "Motion", mcq_count=1, material_ids=["missing"])
        self.client.generate_json.assert_not_called()

    def test_request_checks(self):
        with self.assertRaises(NotFoundError):
            self.generator.generate("missing", "Motion")
        with self.assertRaises(ValidationError):
            self.generator.generate(self.subject.id, "Motion", question_type="essay")
        with self.assertRaises(ValidationError):
            self.generator.generate(self.subject.id, "Motion", mcq_count=0)
        self.client.is_configured = False
        with self.assertRaises(ConfigurationError):
            self.generator.generate(self.subject.id, "Motion", mcq_count=1)

    def test_parse_drops_invalid_questions(self):
        from gradelab.analysis import parse_generated_questions
        raw = {"questions": [
            {"question": "Good?", "options": ["a", "b", "c", "d"], "correct_answer": "a"},
            {"question": "Three options?", "options": ["a", "b", "c"], "correct_answer": "a"},
            {"question": "Answer missing?", "options": ["a", "b", "c", "d"], "correct_answer": "e"},
            {"options": ["a", "b", "c", "d"], "correct_answer": "a"},
        ]}
        self.assertEqual(len(parse_generated_questions(raw, "mcq", 1, "t", 50, {})), 1)
        with self.assertRaises(ValueError):
            parse_generated_questions(raw, "mcq", 2, "t", 50, {})

    def test_parse_theory_marks(self):
        from gradelab.analysis import parse_generated_questions
        raw = [{"question": "A", "marks": 3}, {"question": "B", "marks": 4.5}, {"question": "C", "marks": "4"},
               {"question": "D", "marks": 2}, {"question": "E", "marks": 1}]
        out = parse_generated_questions(raw, "theory", 2, "t", 50, {})
        self.assertEqual([q["marks"] for q in out], [4, 2])

    def test_plan_chunks(self):
        from gradelab.analysis import plan_chunks
        self.assertEqual(plan_chunks("mixed", 30, {1: 2, 8: 1}),
                         [("mcq", 25, {}), ("mcq", 5, {}), ("theory", 3, {1: 2, 8: 1})])
        self.assertEqual([c[1] for c in plan_chunks("theory", 99, {2: 30})], [25, 5])
        self.assertEqual(plan_chunks("theory", 99, {2: 30})[1][2], {2: 5})

    def test_group_sessions(self):
        from datetime import datetime
        from gradelab.analysis import group_sessions
        rows = [
            db_models.GeneratedQuestion(id="1", subject_id="s1", topic="Motion", created_at=datetime(2024, 1, 1)),
            db_models.GeneratedQuestion(id="2", subject_id="s1", topic="Motion", created_at=datetime(2024, 3, 1)),
            db_models.GeneratedQuestion(id="3", subject_id="s2", topic="Optics", created_at=datetime(2024, 2, 1)),
        ]
        sessions = group_sessions(rows, {"s1": "Physics"})
        self.assertEqual([s["topic"] for s in sessions], ["Motion", "Optics"])
        self.assertEqual(sessions[0]["count"], 2)
        self.assertEqual(sessions[0]["last_generated"], "2024-03-01T00:00:00")
        self.assertEqual(sessions[1]["subject"], "Unassigned")


# ─────────────────────────────────────────────────────────
# Run Tests
# ─────────────────────────────────────────────────────────

if __name__ == "__main__":
    unittest.main(verbosity=2)
