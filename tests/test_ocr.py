import os
from io import BytesIO

import openai
import pytest
from pdf2image.exceptions import PDFPageCountError
from PIL import Image

from common.config import Settings
from common.errors import RenderFailure, ServiceCallFailure, UnsupportedInput
from ocr.provider import LINE_BLOCK, OpenAIProvider, TextBlock, to_plain_text
from ocr.render import prepare_sample, render_first_page


@pytest.fixture
def settings(mocker):
    """Fixture to create a Settings object for tests."""
    mocker.patch.dict(
        os.environ,
        {
            "OBJECT_STORE_URL": "http://store:9000",
            "OUTPUT_BUCKET": "docs-out",
            "EXTRACTION_URL": "http://extraction:8080",
            "NOTIFICATION_TARGET": "arn:topic:completions",
            "NOTIFICATION_ROLE": "arn:role:publisher",
            "OPENAI_API_KEY": "test_api_key",
            "AI_MODELS": "gpt-primary,gpt-fallback",
        },
        clear=True,
    )
    return Settings()


@pytest.fixture
def ocr_provider(settings):
    """Fixture to create an OpenAIProvider instance."""
    return OpenAIProvider(settings)


@pytest.fixture
def mock_openai(mocker):
    """Fixture to mock the OpenAI API client."""
    return mocker.patch("openai.chat.completions.create")


def create_mock_response(mocker, content):
    """Helper to create a mock OpenAI API response."""
    mock_choice = mocker.MagicMock()
    mock_choice.message.content = content
    mock_response = mocker.MagicMock()
    mock_response.choices = [mock_choice]
    return mock_response


def create_test_image_bytes(blank=False, fmt="PNG"):
    """Helper to create encoded test image bytes."""
    image = Image.new("RGB", (100, 100), "white" if blank else "black")
    buffer = BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def test_extract_text_returns_line_blocks(ocr_provider, mock_openai, mocker):
    """
    Test successful transcription with the primary model.
    """
    mock_openai.return_value = create_mock_response(
        mocker, "ACME Bank\n\nStatement of account  \nPage 1"
    )

    blocks = ocr_provider.extract_text(create_test_image_bytes())

    assert blocks == [
        TextBlock(LINE_BLOCK, "ACME Bank"),
        TextBlock(LINE_BLOCK, "Statement of account"),
        TextBlock(LINE_BLOCK, "Page 1"),
    ]
    mock_openai.assert_called_once()
    assert mock_openai.call_args.kwargs["model"] == "gpt-primary"
    assert mock_openai.call_args.kwargs["timeout"] == 180


def test_extract_text_falls_back_on_refusal(ocr_provider, mock_openai, mocker):
    """
    Test that the provider falls back to the secondary model if the primary refuses.
    """
    mock_openai.side_effect = [
        create_mock_response(mocker, "I can't assist with that."),
        create_mock_response(mocker, "Fallback model success."),
    ]

    blocks = ocr_provider.extract_text(create_test_image_bytes())

    assert blocks == [TextBlock(LINE_BLOCK, "Fallback model success.")]
    assert mock_openai.call_count == 2
    assert [c.kwargs["model"] for c in mock_openai.call_args_list] == [
        "gpt-primary",
        "gpt-fallback",
    ]


def test_extract_text_falls_back_on_api_error(ocr_provider, mock_openai, mocker):
    """
    Test that an API error moves on to the next model without a local retry.
    """
    mock_openai.side_effect = [
        openai.APIError("API is down", request=None, body=None),
        create_mock_response(mocker, "Fallback success."),
    ]

    blocks = ocr_provider.extract_text(create_test_image_bytes())

    assert to_plain_text(blocks) == "Fallback success.\n"
    assert mock_openai.call_count == 2
    assert mock_openai.call_args.kwargs["model"] == "gpt-fallback"


def test_extract_text_all_models_fail_raises(ocr_provider, mock_openai, mocker):
    """
    Test that ServiceCallFailure is raised when every model fails or refuses.
    """
    mock_openai.side_effect = [
        openai.APIError("API is down", request=None, body=None),
        create_mock_response(mocker, "I cannot assist with this request."),
    ]

    with pytest.raises(ServiceCallFailure):
        ocr_provider.extract_text(create_test_image_bytes())


def test_extract_text_blank_image_skips_model(ocr_provider, mock_openai):
    """
    Test that blank images are skipped and the API is not called.
    """
    assert ocr_provider.extract_text(create_test_image_bytes(blank=True)) == []
    mock_openai.assert_not_called()


def test_extract_text_unreadable_image_raises_render_failure(ocr_provider, mock_openai):
    with pytest.raises(RenderFailure):
        ocr_provider.extract_text(b"not an image")
    mock_openai.assert_not_called()


def test_to_plain_text_joins_only_line_blocks():
    blocks = [
        TextBlock("PAGE", ""),
        TextBlock(LINE_BLOCK, "first"),
        TextBlock("WORD", "first"),
        TextBlock(LINE_BLOCK, "second"),
    ]

    assert to_plain_text(blocks) == "first\nsecond\n"
    assert to_plain_text([]) == ""


def test_render_first_page_requests_page_one_at_300_dpi(mocker):
    page = Image.new("RGB", (50, 80), "white")
    convert = mocker.patch("ocr.render.convert_from_bytes", return_value=[page])

    data = render_first_page(b"%PDF-1.7")

    convert.assert_called_once_with(b"%PDF-1.7", dpi=300, first_page=1, last_page=1)
    with Image.open(BytesIO(data)) as rendered:
        assert rendered.format == "JPEG"
        assert rendered.size == (50, 80)


def test_render_first_page_wraps_pdf_errors(mocker):
    mocker.patch(
        "ocr.render.convert_from_bytes", side_effect=PDFPageCountError("broken")
    )

    with pytest.raises(RenderFailure, match="broken"):
        render_first_page(b"garbage")


def test_render_first_page_without_pages_raises(mocker):
    mocker.patch("ocr.render.convert_from_bytes", return_value=[])

    with pytest.raises(RenderFailure):
        render_first_page(b"%PDF-1.7")


def test_prepare_sample_passes_images_through(mocker):
    render = mocker.patch("ocr.render.render_first_page")
    content = create_test_image_bytes(fmt="JPEG")

    assert prepare_sample(content, "jpg") == content
    render.assert_not_called()


def test_prepare_sample_renders_pdfs(mocker):
    render = mocker.patch("ocr.render.render_first_page", return_value=b"jpeg")

    assert prepare_sample(b"%PDF", "pdf") == b"jpeg"
    render.assert_called_once_with(b"%PDF")


@pytest.mark.parametrize("extension", ["txt", None])
def test_prepare_sample_rejects_unsupported_types(extension):
    with pytest.raises(UnsupportedInput):
        prepare_sample(b"data", extension)
