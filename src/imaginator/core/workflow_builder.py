"""Backend workflow graph construction.

The generation backend executes a graph of stages in ComfyUI's API format.
Each stage is keyed by a stable string id and declares a ``class_type`` plus
its ``inputs``.  An input is either a literal parameter or a link to another
stage's output, written as ``[stage_key, output_slot]``.

Base Text-to-Image Graph
------------------------
::

    4 CheckpointLoaderSimple ──model──────────────┐
      │ clip                                      │
      ├──> 6 CLIPTextEncode (positive) ──────────>│
      └──> 7 CLIPTextEncode (negative) ──────────>3 KSampler ──> 8 VAEDecode ──> 9 SaveImage
    5 EmptyLatentImage ──────────────────────────>│                 ^
                                                                    │ vae (4, slot 2)

The upscale variant inserts ``10 ImageScaleBy`` between decode and save.

Both entry points are pure: they return a fresh dictionary and never modify
a graph that was passed in or built earlier.
"""

from __future__ import annotations

import copy
import random
from typing import Any

Graph = dict[str, dict[str, Any]]

DEFAULT_NEGATIVE_PROMPT = (
    "text, watermark, lowres, low quality, worst quality, deformed, glitch, "
    "low contrast, noisy, saturation, blurry"
)
DEFAULT_WIDTH = 1024
DEFAULT_HEIGHT = 1024
DEFAULT_STEPS = 20
DEFAULT_CFG_SCALE = 7.5
DEFAULT_SAMPLER = "euler"
DEFAULT_SCHEDULER = "normal"
DEFAULT_CHECKPOINT = "sd_xl_base_1.0.safetensors"
DEFAULT_DENOISE = 1.0
DEFAULT_FILENAME_PREFIX = "ComfyUI"

# Exclusive upper bound for randomly drawn seeds.
SEED_RANGE = 1_000_000_000

# Stable stage keys.
SAMPLER = "3"
CHECKPOINT = "4"
LATENT = "5"
POSITIVE = "6"
NEGATIVE = "7"
DECODE = "8"
SAVE = "9"
UPSCALE = "10"


def _stage(class_type: str, title: str, inputs: dict[str, Any]) -> dict[str, Any]:
    return {"inputs": inputs, "class_type": class_type, "_meta": {"title": title}}


def build_text_to_image(
    prompt: str,
    options: dict[str, Any] | None = None,
    *,
    rng: random.Random | None = None,
) -> Graph:
    """Build the base text-to-image graph.

    Args:
        prompt: Positive prompt text (directives already stripped).
        options: Generation options.  Recognised keys are
            ``negative_prompt``, ``width``, ``height``, ``steps``,
            ``cfg_scale``, ``sampler``, ``scheduler``, ``seed``, ``model``
            and ``denoise``.  Unknown keys are ignored; ``None`` values fall
            back to the defaults.
        rng: Random source used only when no seed is given.  Defaults to the
            module-level :mod:`random` functions.

    Returns:
        A new graph dictionary keyed by stage id.
    """
    opts = {key: value for key, value in (options or {}).items() if value is not None}

    seed = opts.get("seed")
    if seed is None:
        seed = (rng or random).randrange(SEED_RANGE)

    return {
        SAMPLER: _stage(
            "KSampler",
            "KSampler",
            {
                "seed": seed,
                "steps": opts.get("steps", DEFAULT_STEPS),
                "cfg": opts.get("cfg_scale", DEFAULT_CFG_SCALE),
                "sampler_name": opts.get("sampler", DEFAULT_SAMPLER),
                "scheduler": opts.get("scheduler", DEFAULT_SCHEDULER),
                "denoise": opts.get("denoise", DEFAULT_DENOISE),
                "model": [CHECKPOINT, 0],
                "positive": [POSITIVE, 0],
                "negative": [NEGATIVE, 0],
                "latent_image": [LATENT, 0],
            },
        ),
        CHECKPOINT: _stage(
            "CheckpointLoaderSimple",
            "Load Checkpoint",
            {"ckpt_name": opts.get("model", DEFAULT_CHECKPOINT)},
        ),
        LATENT: _stage(
            "EmptyLatentImage",
            "Empty Latent Image",
            {
                "width": opts.get("width", DEFAULT_WIDTH),
                "height": opts.get("height", DEFAULT_HEIGHT),
                "batch_size": 1,
            },
        ),
        POSITIVE: _stage(
            "CLIPTextEncode",
            "CLIP Text Encode (Prompt)",
            {"text": prompt, "clip": [CHECKPOINT, 1]},
        ),
        NEGATIVE: _stage(
            "CLIPTextEncode",
            "CLIP Text Encode (Negative)",
            {"text": opts.get("negative_prompt", DEFAULT_NEGATIVE_PROMPT), "clip": [CHECKPOINT, 1]},
        ),
        DECODE: _stage(
            "VAEDecode",
            "VAE Decode",
            {"samples": [SAMPLER, 0], "vae": [CHECKPOINT, 2]},
        ),
        SAVE: _stage(
            "SaveImage",
            "Save Image",
            {"filename_prefix": DEFAULT_FILENAME_PREFIX, "images": [DECODE, 0]},
        ),
    }


def with_upscale(graph: Graph, *, scale_by: float = 2, method: str = "nearest-exact") -> Graph:
    """Return a copy of *graph* with a rescale stage before the save stage.

    Args:
        graph: A graph produced by :func:`build_text_to_image`.  It is not
            modified.
        scale_by: Scale factor applied to the decoded image.
        method: Backend upscale method name.

    Returns:
        A new graph in which ``SaveImage`` consumes the rescaled image.
    """
    upscaled = copy.deepcopy(graph)
    upscaled[UPSCALE] = _stage(
        "ImageScaleBy",
        "Upscale Image",
        {"upscale_method": method, "scale_by": scale_by, "image": [DECODE, 0]},
    )
    upscaled[SAVE]["inputs"]["images"] = [UPSCALE, 0]
    return upscaled


def build_text_to_image_upscaled(
    prompt: str,
    options: dict[str, Any] | None = None,
    *,
    rng: random.Random | None = None,
) -> Graph:
    """Build the text-to-image graph followed by a 2x rescale stage."""
    return with_upscale(build_text_to_image(prompt, options, rng=rng))


def node_dependencies(graph: Graph) -> dict[str, set[str]]:
    """Map every stage key to the keys of the stages it consumes.

    Raises:
        ValueError: If a link refers to a stage that is not in the graph.
    """
    dependencies: dict[str, set[str]] = {}
    for key, stage in graph.items():
        consumed = set()
        for value in stage["inputs"].values():
            if isinstance(value, list) and len(value) == 2 and isinstance(value[0], str):
                if value[0] not in graph:
                    raise ValueError(f"Stage {key} links to missing stage {value[0]}")
                consumed.add(value[0])
        dependencies[key] = consumed
    return dependencies
