import pytest

from orderflow.services.payload_aliases import (
    direct_job_ids,
    execution_id_of,
    external_id_of,
    extract_error_message,
    media_url_of,
    normalize_asset_type,
    normalize_status,
    output_entries,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("succeeded", "completed"),
        ("SUCCESS", "completed"),
        ("done", "completed"),
        ("error", "failed"),
        ("canceled", "failed"),
        ("running", "processing"),
        (None, "processing"),
    ],
)
def test_normalize_status(raw, expected):
    assert normalize_status(raw) == expected


def test_url_and_external_id_aliases():
    assert media_url_of({"outputUrl": "https://cdn/a.png"}) == "https://cdn/a.png"
    assert media_url_of({"secure_url": "https://cdn/s.png", "url": "http://cdn/s.png"}) == "https://cdn/s.png"
    assert media_url_of({"width": 1080}) is None
    assert external_id_of({"publicId": "brand/abc"}) == "brand/abc"
    assert external_id_of({}) is None


def test_execution_id_aliases():
    assert execution_id_of({"executionId": "e-1"}) == "e-1"
    assert execution_id_of({"execution_id": 42}) == "42"
    assert execution_id_of({"id": "not-an-execution"}) is None


def test_output_entries_shapes():
    assert output_entries({"output": "https://cdn/a.png"}) == [{"url": "https://cdn/a.png"}]
    assert output_entries({"result": {"outputs": [{"url": "u1"}, "skip-me", {"url": "u2"}]}}) == [
        {"url": "u1"},
        {"url": "u2"},
    ]
    assert output_entries({"outputs": ["u1", {"href": "u2"}]}) == [{"url": "u1"}, {"href": "u2"}]
    assert output_entries({"result": {"secure_url": "u3"}}) == [{"secure_url": "u3"}]
    assert output_entries({"status": "completed"}) == []


def test_direct_job_ids_keep_order_without_duplicates():
    assert direct_job_ids({"jobId": "j1", "job_id": "j1", "id": "j2"}) == ["j1", "j2"]
    assert direct_job_ids(None) == []


def test_error_message_sources():
    assert extract_error_message({"error": "GPU exhausted"}) == "GPU exhausted"
    assert extract_error_message({"error": {"message": "bad prompt"}}) == "bad prompt"
    assert extract_error_message({"meta": {"reason": "timeout"}}) == "timeout"
    assert extract_error_message({}) == "Render failed without an error message"


def test_asset_type_normalization():
    assert normalize_asset_type("video/mp4") == "video"
    assert normalize_asset_type("carousel") == "carousel_slide"
    assert normalize_asset_type("slide") == "carousel_slide"
    assert normalize_asset_type("image/png") == "image"
    assert normalize_asset_type(None, "render_carousel") == "carousel_slide"
    assert normalize_asset_type(None, "render_image") == "image"
