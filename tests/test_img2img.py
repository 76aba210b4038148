"""Image2ImageGenerator 单元测试。"""

from __future__ import annotations

import io
import threading
from types import SimpleNamespace

import pytest
import torch
from PIL import Image

from config.settings import AppConfig
from modules.history.errors import GenerationCancelled
from modules.pipelines import img2img
from modules.pipelines.base import GenerateParams


class DummyImg2ImgPipeline:
    """模拟 StableDiffusionXLImg2ImgPipeline。"""

    latest: "DummyImg2ImgPipeline | None" = None
    steps_to_run = 3

    def __init__(self) -> None:
        self.model_id = ""
        self.kwargs = {}
        self.device = None
        self.called_with = None
        self.xformers_enabled = False
        self.vae_tiling_enabled = False
        self._interrupt = False

    @classmethod
    def from_pretrained(cls, model_id: str, **kwargs):
        instance = cls()
        instance.model_id = model_id
        instance.kwargs = kwargs
        cls.latest = instance
        return instance

    def to(self, device: str, dtype=None):
        self.device = device
        return self

    def enable_xformers_memory_efficient_attention(self):
        self.xformers_enabled = True

    def enable_vae_tiling(self):
        self.vae_tiling_enabled = True

    def __call__(self, **kwargs):
        self.called_with = kwargs
        callback = kwargs.get("callback_on_step_end")
        for step in range(self.steps_to_run):
            if self._interrupt:
                break
            if callback is not None:
                callback(self, step, step, {})
        width, height = kwargs["image"].size
        return SimpleNamespace(images=[Image.new("RGB", (width, height), "blue")])


@pytest.fixture(autouse=True)
def force_cpu(monkeypatch):
    monkeypatch.setattr(torch.cuda, "is_available", lambda: False)
    monkeypatch.setattr(img2img, "StableDiffusionXLImg2ImgPipeline", DummyImg2ImgPipeline)
    yield


@pytest.fixture
def init_image(tmp_path):
    path = tmp_path / "init.png"
    Image.new("RGB", (300, 200), "white").save(path)
    return path


def test_load_pipeline_uses_config(tmp_path):
    config = AppConfig(model_dir=tmp_path)
    config.metadata["img2img_model_id"] = "repo/custom-img2img"
    generator = img2img.Image2ImageGenerator(config)

    pipeline = generator.load_pipeline("gemini-3-pro-image-preview")

    assert pipeline.model_id == "repo/custom-img2img"
    assert pipeline.kwargs["torch_dtype"] == torch.float32
    assert pipeline.kwargs["cache_dir"] == str(tmp_path)
    assert pipeline.device == "cpu"
    assert pipeline.xformers_enabled and pipeline.vae_tiling_enabled
    assert generator.load_pipeline() is pipeline


def test_non_gemini_model_name_selects_checkpoint(tmp_path):
    generator = img2img.Image2ImageGenerator(AppConfig(model_dir=tmp_path))

    pipeline = generator.load_pipeline("stabilityai/sdxl-turbo")

    assert pipeline.model_id == "stabilityai/sdxl-turbo"


def test_generate_returns_png_bytes(tmp_path, init_image):
    config = AppConfig(model_dir=tmp_path, img2img_strength=0.55, img2img_steps=15, guidance_scale=8.0)
    generator = img2img.Image2ImageGenerator(config)

    result = generator.generate(
        GenerateParams(
            model="gemini-3-pro-image-preview",
            prompt="a cat sketch",
            image_paths=[str(init_image)],
            aspect_ratio="16:9",
            image_size="1K",
        )
    )

    pipeline = DummyImg2ImgPipeline.latest
    assert pipeline.called_with["prompt"] == "a cat sketch"
    assert pipeline.called_with["strength"] == pytest.approx(0.55)
    assert pipeline.called_with["num_inference_steps"] == 15
    assert pipeline.called_with["guidance_scale"] == pytest.approx(8.0)
    assert pipeline.called_with["image"].size == (1024, 576)

    assert len(result.images) == 1
    assert result.images[0].mime_type == "image/png"
    with Image.open(io.BytesIO(result.images[0].data)) as decoded:
        assert decoded.size == (1024, 576)


def test_generate_requires_input_image(tmp_path):
    generator = img2img.Image2ImageGenerator(AppConfig(model_dir=tmp_path))

    with pytest.raises(ValueError):
        generator.generate(GenerateParams(model="m", prompt="p"))


def test_cancel_interrupts_pipeline(monkeypatch, tmp_path, init_image):
    generator = img2img.Image2ImageGenerator(AppConfig(model_dir=tmp_path))
    cancel = threading.Event()
    original = DummyImg2ImgPipeline.__call__

    def _cancel_then_run(self, **kwargs):
        cancel.set()
        return original(self, **kwargs)

    monkeypatch.setattr(DummyImg2ImgPipeline, "__call__", _cancel_then_run)

    with pytest.raises(GenerationCancelled):
        generator.generate(
            GenerateParams(model="m", prompt="p", image_paths=[str(init_image)]), cancel_event=cancel
        )

    assert DummyImg2ImgPipeline.latest._interrupt is True


@pytest.mark.parametrize(
    ("aspect_ratio", "image_size", "expected"),
    [
        ("1:1", "1K", (1024, 1024)),
        ("16:9", "2K", (2048, 1152)),
        ("9:16", "1K", (576, 1024)),
        ("", "", (1024, 704)),
        ("4:3", "4K", (4096, 3072)),
    ],
)
def test_target_dimensions(aspect_ratio, image_size, expected):
    assert img2img.target_dimensions(aspect_ratio, image_size, (300, 200)) == expected
