"""Tests for image loading, preprocessing and the ONNX classifier handle."""

from __future__ import annotations

import io
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
from PIL import Image

from visagist.ml.image_classifier import LabelScore, OnnxImageClassifier, softmax
from visagist.ml.preprocessing import ImagePreprocessor, load_image

_LIMITS = {"max_file_size": 1_000_000, "max_image_pixels": 1_000_000}


def _png_bytes(size: tuple[int, int] = (8, 8)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, (255, 255, 255)).save(buffer, format="PNG")
    return buffer.getvalue()


class TestLoadImage:
    def test_decodes_bytes_to_rgb(self) -> None:
        image = load_image(_png_bytes((10, 6)), **_LIMITS)
        assert image.mode == "RGB"
        assert image.size == (10, 6)

    def test_reads_local_path(self, tmp_path: Path) -> None:
        path = tmp_path / "cat.png"
        path.write_bytes(_png_bytes())
        assert load_image(str(path), **_LIMITS).size == (8, 8)
        assert load_image(path, **_LIMITS).size == (8, 8)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="not found"):
            load_image(tmp_path / "nope.png", **_LIMITS)

    def test_garbage_bytes(self) -> None:
        with pytest.raises(ValueError, match="Cannot decode"):
            load_image(b"definitely not an image", **_LIMITS)

    def test_empty_payload(self) -> None:
        with pytest.raises(ValueError, match="empty"):
            load_image(b"", **_LIMITS)

    def test_payload_too_large(self) -> None:
        with pytest.raises(ValueError, match="exceeds"):
            load_image(_png_bytes(), max_file_size=10, max_image_pixels=1_000_000)

    def test_too_many_pixels(self) -> None:
        with pytest.raises(ValueError, match="pixels"):
            load_image(_png_bytes((20, 20)), max_file_size=1_000_000, max_image_pixels=100)

    @patch("visagist.ml.preprocessing.httpx.get")
    def test_fetches_url(self, mock_get: MagicMock) -> None:
        mock_get.return_value = MagicMock(content=_png_bytes((3, 5)))

        image = load_image("https://example.com/meme.png", fetch_timeout=2.5, **_LIMITS)

        assert image.size == (3, 5)
        mock_get.assert_called_once_with("https://example.com/meme.png", timeout=2.5, follow_redirects=True)


class TestImagePreprocessor:
    def test_fixed_size_from_config(self) -> None:
        pre = ImagePreprocessor.from_config({"size": {"height": 32, "width": 16}})
        tensor = pre(Image.new("RGB", (100, 50)))
        assert tensor.shape == (1, 3, 32, 16)
        assert tensor.dtype == np.float32

    def test_shortest_edge_then_center_crop(self) -> None:
        pre = ImagePreprocessor.from_config({"size": {"shortest_edge": 20}, "crop_size": {"height": 16, "width": 16}})
        tensor = pre(Image.new("RGB", (40, 20)))
        assert tensor.shape == (1, 3, 16, 16)

    def test_rescale_and_normalize(self) -> None:
        pre = ImagePreprocessor.from_config(
            {"size": {"height": 2, "width": 2}, "image_mean": [0.5] * 3, "image_std": [0.5] * 3}
        )
        tensor = pre(Image.new("RGB", (4, 4), (255, 0, 255)))
        np.testing.assert_allclose(tensor[0, 0], 1.0, atol=1e-6)
        np.testing.assert_allclose(tensor[0, 1], -1.0, atol=1e-6)

    def test_normalize_disabled(self) -> None:
        pre = ImagePreprocessor.from_config({"size": 2, "do_normalize": False})
        tensor = pre(Image.new("RGB", (2, 2), (255, 255, 255)))
        np.testing.assert_allclose(tensor, 1.0, atol=1e-6)


class TestOnnxImageClassifier:
    def _classifier(self, logits: list[float], top_k: int = 5) -> tuple[OnnxImageClassifier, MagicMock]:
        session = MagicMock()
        input_meta = MagicMock()
        input_meta.name = "pixel_values"
        session.get_inputs.return_value = [input_meta]
        session.run.return_value = [np.asarray([logits], dtype=np.float32)]
        classifier = OnnxImageClassifier(
            "test/meme-detector",
            session,
            labels={0: "meme", 1: "not meme"},
            preprocessor=ImagePreprocessor(size=(4, 4)),
            top_k=top_k,
        )
        return classifier, session

    def test_infer_returns_sorted_softmax_scores(self) -> None:
        classifier, session = self._classifier([0.0, 2.0])

        results = classifier.infer(_png_bytes())

        assert [r.label for r in results] == ["not meme", "meme"]
        assert sum(r.score for r in results) == pytest.approx(1.0)
        assert results[0].score == pytest.approx(1 / (1 + np.exp(-2.0)))
        feed = session.run.call_args.args[1]
        assert feed["pixel_values"].shape == (1, 3, 4, 4)

    def test_top_k_truncates(self) -> None:
        classifier, _ = self._classifier([3.0, 0.0], top_k=1)
        results = classifier.infer(_png_bytes())
        assert len(results) == 1
        assert isinstance(results[0], LabelScore)
        assert results[0].label == "meme"

    def test_unknown_index_gets_placeholder_label(self) -> None:
        classifier, _ = self._classifier([0.0, 0.0, 5.0])
        assert classifier.infer(_png_bytes())[0].label == "LABEL_2"

    def test_undecodable_image_raises(self) -> None:
        classifier, session = self._classifier([0.0, 1.0])
        with pytest.raises(ValueError):
            classifier.infer(b"junk")
        session.run.assert_not_called()

    def test_softmax_is_stable(self) -> None:
        scores = softmax(np.asarray([1000.0, 1000.0], dtype=np.float32))
        np.testing.assert_allclose(scores, [0.5, 0.5])
