from unittest.mock import MagicMock

import pytest

from lora_captions.clients.openai import OpenAIClient
from lora_captions.modes import ProcessingMode, SemanticRole
from lora_captions.utils.file_processor import FileProcessor
from tests.helpers import (
    FakeCaptionClient,
    FakeRefineClient,
    create_dummy_image,
    make_chat_response,
    make_rate_limit_error,
)


def make_processor(error_handler, sleeper, caption_client=None, refine_client=None, pacing_seconds=60):
    return FileProcessor(
        error_handler=error_handler,
        caption_client=caption_client,
        refine_client=refine_client,
        pacing_seconds=pacing_seconds,
        show_progress=False,
        sleep=sleeper,
    )


@pytest.fixture
def dataset(tmp_path):
    input_dir = tmp_path / "downloads"
    create_dummy_image(input_dir / "a.png", b"image-a")
    create_dummy_image(input_dir / "b.jpg", b"image-b")
    return input_dir


def test_find_images_filters_by_exact_suffix(tmp_path, error_handler, sleeper):
    """
    Only regular files ending in .png or .jpg (case-sensitive) are candidates.
    """
    create_dummy_image(tmp_path / "a.png")
    create_dummy_image(tmp_path / "b.jpg")
    create_dummy_image(tmp_path / "c.JPG")
    create_dummy_image(tmp_path / "d.jpeg")
    (tmp_path / "readme.md").write_text("not an image")
    (tmp_path / "folder.png").mkdir()

    processor = make_processor(error_handler, sleeper)

    assert sorted(processor.find_images(str(tmp_path))) == ["a.png", "b.jpg"]


def test_caption_and_refine_writes_refined_artifacts(dataset, tmp_path, error_handler, sleeper):
    output_dir = tmp_path / "training_data"
    captioner = FakeCaptionClient(default="a man standing in the rain")
    refiner = FakeRefineClient()
    processor = make_processor(error_handler, sleeper, captioner, refiner)

    results = processor.process_all(str(dataset), str(output_dir), "zxc", SemanticRole.SUBJECT,
                                    ProcessingMode.CAPTION_AND_REFINE)

    assert results['status'] == 'completed'
    assert results['total_processed'] == 2
    assert (output_dir / "a.txt").read_text(encoding="utf-8") == "zxc: a man standing in the rain"
    assert (output_dir / "b.txt").read_text(encoding="utf-8") == "zxc: a man standing in the rain"
    assert sorted(name for name, _ in captioner.calls) == ["a.png", "b.jpg"]
    assert {data for _, data in captioner.calls} == {b"image-a", b"image-b"}
    assert all(role is SemanticRole.SUBJECT for _, _, role in refiner.calls)
    # Images are not copied in this mode
    assert sorted(p.name for p in output_dir.iterdir()) == ["a.txt", "b.txt"]
    # One pacing interval per refined file
    assert sleeper.total == 120


def test_second_run_skips_everything(dataset, tmp_path, error_handler, sleeper):
    output_dir = tmp_path / "training_data"
    captioner = FakeCaptionClient()
    refiner = FakeRefineClient()
    processor = make_processor(error_handler, sleeper, captioner, refiner)

    processor.process_all(str(dataset), str(output_dir), "zxc", "subject", "caption-and-refine")
    first_run = {p.name: p.read_text(encoding="utf-8") for p in output_dir.iterdir()}
    captioner.calls.clear()
    refiner.calls.clear()
    sleeper.calls.clear()

    results = processor.process_all(str(dataset), str(output_dir), "zxc", "subject", "caption-and-refine")

    assert results['total_skipped'] == 2
    assert results['total_processed'] == 0
    assert captioner.calls == []
    assert refiner.calls == []
    assert sleeper.calls == []
    assert {p.name: p.read_text(encoding="utf-8") for p in output_dir.iterdir()} == first_run


def test_caption_failure_only_affects_that_file(dataset, tmp_path, error_handler, sleeper):
    output_dir = tmp_path / "out"
    captioner = FakeCaptionClient(captions={"a.png": None, "b.jpg": "a red barn"})
    refiner = FakeRefineClient()
    processor = make_processor(error_handler, sleeper, captioner, refiner)

    results = processor.process_all(str(dataset), str(output_dir), "zxc", "style", "caption-and-refine")

    assert results['status'] == 'completed'
    assert results['total_errors'] == 1
    assert results['total_processed'] == 1
    assert not (output_dir / "a.txt").exists()
    assert (output_dir / "b.txt").read_text(encoding="utf-8") == "zxc: a red barn"
    # The refinement backend was never called for a.png, so it is not paced
    assert [call[1] for call in refiner.calls] == ["a red barn"]
    assert sleeper.total == 60


def test_refinement_failure_writes_nothing_and_is_retried_next_run(tmp_path, error_handler, sleeper):
    input_dir = tmp_path / "in"
    output_dir = tmp_path / "out"
    create_dummy_image(input_dir / "cat.png")
    captioner = FakeCaptionClient(default="a cat on a sofa")
    processor = make_processor(error_handler, sleeper, captioner, FakeRefineClient(results=[None]))

    results = processor.process_all(str(input_dir), str(output_dir), "zxc", "subject", "caption-and-refine")

    assert results['total_errors'] == 1
    assert not (output_dir / "cat.txt").exists()
    assert sleeper.total == 60

    processor.refine_client = FakeRefineClient(results=["zxc on a sofa"])
    results = processor.process_all(str(input_dir), str(output_dir), "zxc", "subject", "caption-and-refine")

    assert results['total_processed'] == 1
    assert len(captioner.calls) == 2
    assert (output_dir / "cat.txt").read_text(encoding="utf-8") == "zxc on a sofa"


def test_refine_only_rewrites_existing_captions_in_place(tmp_path, error_handler, sleeper):
    folder = tmp_path / "training_data"
    create_dummy_image(folder / "a.png")
    create_dummy_image(folder / "b.png")
    (folder / "a.txt").write_text("an oil painting of a harbor", encoding="utf-8")
    refiner = FakeRefineClient(results=["a zxc oil painting of a harbor"])
    processor = make_processor(error_handler, sleeper, refine_client=refiner)

    results = processor.process_all(str(folder), str(folder), "zxc", SemanticRole.STYLE,
                                    ProcessingMode.REFINE_ONLY)

    assert results['total_processed'] == 1
    assert results['total_skipped'] == 1
    assert refiner.calls == [("zxc", "an oil painting of a harbor", SemanticRole.STYLE)]
    assert (folder / "a.txt").read_text(encoding="utf-8") == "a zxc oil painting of a harbor"
    assert not (folder / "b.txt").exists()


def test_refine_only_skip_incurs_no_pacing_delay(tmp_path, error_handler, sleeper):
    folder = tmp_path / "training_data"
    create_dummy_image(folder / "a.png")
    create_dummy_image(folder / "b.png")
    refiner = FakeRefineClient()
    processor = make_processor(error_handler, sleeper, refine_client=refiner)

    results = processor.process_all(str(folder), str(folder), "zxc", "subject", "refine-only")

    assert results['total_skipped'] == 2
    assert refiner.calls == []
    assert sleeper.calls == []


def test_refine_only_failure_leaves_caption_untouched(tmp_path, error_handler, sleeper):
    folder = tmp_path / "training_data"
    create_dummy_image(folder / "a.png")
    (folder / "a.txt").write_text("original caption", encoding="utf-8")
    processor = make_processor(error_handler, sleeper, refine_client=FakeRefineClient(results=[None]))

    results = processor.process_all(str(folder), str(folder), "zxc", "subject", "refine-only")

    assert results['total_errors'] == 1
    assert (folder / "a.txt").read_text(encoding="utf-8") == "original caption"
    # Paced even though the refinement failed
    assert sleeper.total == 60


def test_caption_prepend_writes_prefixed_caption_and_copies_image(tmp_path, error_handler, sleeper):
    input_dir = tmp_path / "in"
    output_dir = tmp_path / "output"
    source = create_dummy_image(input_dir / "cat.png", b"\x89PNG\r\n\x1a\n\x00\x01binary\xff")
    captioner = FakeCaptionClient(default="a tabby cat asleep")
    processor = make_processor(error_handler, sleeper, caption_client=captioner)

    results = processor.process_all(str(input_dir), str(output_dir), "zxc", None, ProcessingMode.CAPTION_PREPEND)

    assert results['total_processed'] == 1
    assert (output_dir / "cat.txt").read_text(encoding="utf-8") == "zxc a tabby cat asleep"
    assert (output_dir / "cat.png").read_bytes() == source.read_bytes()
    assert sleeper.calls == []


def test_caption_prepend_skips_existing_and_failed_files(tmp_path, error_handler, sleeper):
    input_dir = tmp_path / "in"
    output_dir = tmp_path / "output"
    create_dummy_image(input_dir / "done.png")
    create_dummy_image(input_dir / "broken.png")
    output_dir.mkdir()
    (output_dir / "done.txt").write_text("zxc already captioned", encoding="utf-8")
    captioner = FakeCaptionClient(captions={"broken.png": None})
    processor = make_processor(error_handler, sleeper, caption_client=captioner)

    results = processor.process_all(str(input_dir), str(output_dir), "zxc", None, "caption-prepend")

    assert results['total_skipped'] == 1
    assert results['total_errors'] == 1
    assert [name for name, _ in captioner.calls] == ["broken.png"]
    assert not (output_dir / "broken.txt").exists()
    assert not (output_dir / "broken.png").exists()
    assert (output_dir / "done.txt").read_text(encoding="utf-8") == "zxc already captioned"


def test_non_image_files_never_reach_a_backend(tmp_path, error_handler, sleeper):
    input_dir = tmp_path / "in"
    output_dir = tmp_path / "out"
    create_dummy_image(input_dir / "a.png")
    (input_dir / "readme.md").write_text("# dataset", encoding="utf-8")
    captioner = FakeCaptionClient()
    processor = make_processor(error_handler, sleeper, captioner, FakeRefineClient())

    processor.process_all(str(input_dir), str(output_dir), "zxc", "subject", "caption-and-refine")

    assert [name for name, _ in captioner.calls] == ["a.png"]
    assert not (output_dir / "readme.txt").exists()


def test_exception_on_one_file_does_not_abort_the_batch(dataset, tmp_path, error_handler, sleeper):
    output_dir = tmp_path / "out"
    captioner = FakeCaptionClient(captions={"a.png": RuntimeError("backend exploded")})
    processor = make_processor(error_handler, sleeper, captioner, FakeRefineClient())

    results = processor.process_all(str(dataset), str(output_dir), "zxc", "subject", "caption-and-refine")

    assert results['status'] == 'completed'
    assert results['total_errors'] == 1
    assert (output_dir / "b.txt").exists()
    assert not (output_dir / "a.txt").exists()
    assert error_handler.error_counts['file_errors'] == 1


def test_missing_input_folder_ends_run_without_raising(tmp_path, error_handler, sleeper):
    output_dir = tmp_path / "out"
    captioner = FakeCaptionClient()
    processor = make_processor(error_handler, sleeper, captioner, FakeRefineClient())

    results = processor.process_all(str(tmp_path / "missing"), str(output_dir), "zxc", "subject",
                                    "caption-and-refine")

    assert results['status'] == 'error'
    assert captioner.calls == []
    assert not output_dir.exists()
    assert error_handler.get_error_summary()['total_errors'] == 1


def test_output_folder_is_created(dataset, tmp_path, error_handler, sleeper):
    output_dir = tmp_path / "nested" / "training_data"
    processor = make_processor(error_handler, sleeper, FakeCaptionClient(), FakeRefineClient(), pacing_seconds=0)

    processor.process_all(str(dataset), str(output_dir), "zxc", "subject", "caption-and-refine")

    assert output_dir.is_dir()
    assert sleeper.calls == []


def test_interrupt_stops_at_next_file(dataset, tmp_path, error_handler, sleeper):
    output_dir = tmp_path / "out"
    processor = make_processor(error_handler, sleeper, FakeCaptionClient())

    class InterruptingRefiner(FakeRefineClient):
        def refine(self, trigger_word, raw_caption, role):
            processor.interrupt()
            return super().refine(trigger_word, raw_caption, role)

    processor.refine_client = InterruptingRefiner()

    results = processor.process_all(str(dataset), str(output_dir), "zxc", "subject", "caption-and-refine")

    assert results['status'] == 'interrupted'
    assert results['total_processed'] == 1
    assert len(list(output_dir.glob("*.txt"))) == 1
    # The pacing delay is cut short as well
    assert sleeper.calls == []


def test_refinement_modes_require_a_role(dataset, tmp_path, error_handler, sleeper):
    processor = make_processor(error_handler, sleeper, FakeCaptionClient(), FakeRefineClient())

    with pytest.raises(ValueError):
        processor.process_all(str(dataset), str(tmp_path / "out"), "zxc", None, "caption-and-refine")


def test_processing_summary_mentions_counts(dataset, tmp_path, error_handler, sleeper):
    processor = make_processor(error_handler, sleeper, FakeCaptionClient(), FakeRefineClient(), pacing_seconds=0)
    results = processor.process_all(str(dataset), str(tmp_path / "out"), "zxc", "subject", "caption-and-refine")

    summary = processor.get_processing_summary(results)

    assert "Images processed: 2" in summary
    assert "Status: completed" in summary


def test_rate_limited_refinement_writes_one_artifact(tmp_path, error_handler, sleeper):
    input_dir = tmp_path / "downloads"
    output_dir = tmp_path / "training_data"
    create_dummy_image(input_dir / "cat.png")
    refiner = OpenAIClient(api_key="sk-test", sleep=sleeper)
    refiner.set_error_handler(error_handler)
    refiner._client = MagicMock()
    create = refiner._client.chat.completions.create
    create.side_effect = [
        make_rate_limit_error({"retry-after": "1"}),
        make_rate_limit_error({"retry-after": "1"}),
        make_chat_response("zxc cat"),
    ]
    processor = make_processor(error_handler, sleeper, FakeCaptionClient(default="a cat"), refiner)

    results = processor.process_all(str(input_dir), str(output_dir), "zxc", SemanticRole.SUBJECT,
                                    ProcessingMode.CAPTION_AND_REFINE)

    assert results['total_processed'] == 1
    assert results['total_errors'] == 0
    assert [p.name for p in output_dir.iterdir()] == ["cat.txt"]
    assert (output_dir / "cat.txt").read_text(encoding="utf-8") == "zxc cat"
    assert create.call_count == 3
    # Two one-second rate-limit waits, then the pacing interval
    assert sleeper.calls == [1, 1] + [1] * 60
    assert error_handler.get_error_summary()['total_errors'] == 0
