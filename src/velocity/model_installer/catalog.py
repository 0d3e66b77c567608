"""Built-in model catalog and user-entered custom descriptors."""

from dataclasses import dataclass
from typing import Dict, List, Optional

_JOYFUSION = "https://huggingface.co/Norton0924/Joyfusion/resolve/main"


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    display_name: str
    description: str
    declared_size_label: str  # free text, display only
    locator: str


CATALOG: List[ModelDescriptor] = [
    ModelDescriptor(
        id="analog-diffusion-vae-split-einsum-chunked-512x512",
        display_name="Analog Diffusion (Split Einsum 512×512)",
        description="Analog photography style model with split einsum optimization",
        declared_size_label="1.97 GB",
        locator=f"{_JOYFUSION}/Analog-Diffusion_vae_split-einsum-chunked_512x512.zip",
    ),
    ModelDescriptor(
        id="counterfeit-v2.5-vae-split-einsum-chunked-512x512",
        display_name="Counterfeit v2.5 (Split Einsum 512×512)",
        description="High-quality anime model with split einsum optimization",
        declared_size_label="1.97 GB",
        locator=f"{_JOYFUSION}/Counterfeit-V2.5_vae_split-einsum_chunked_512x512.zip",
    ),
    ModelDescriptor(
        id="dreamshaper-vae-split-einsum-chunked-512x512",
        display_name="DreamShaper (Split Einsum 512×512)",
        description="High-quality artistic model with split einsum optimization",
        declared_size_label="1.97 GB",
        locator=f"{_JOYFUSION}/DreamShaper_vae-split-einsum_chunked_512x512.zip",
    ),
    ModelDescriptor(
        id="openjourney-vae-split-einsum-chunked-512-512",
        display_name="OpenJourney (Split Einsum 512×512)",
        description="Midjourney-style model with split einsum optimization",
        declared_size_label="1.97 GB",
        locator=f"{_JOYFUSION}/openjourney-vae-split_einsum-chunked-512_512.zip",
    ),
    ModelDescriptor(
        id="epicrealism-v5-split-einsum",
        display_name="EpicRealism v5 (Split Einsum)",
        description="Photorealistic model with split einsum optimization",
        declared_size_label="1.96 GB",
        locator=f"{_JOYFUSION}/epicrealism_v5_split-einsum.zip",
    ),
    ModelDescriptor(
        id="deliberate-v2-vae-chunked",
        display_name="Deliberate v2 (Chunked)",
        description="Versatile general purpose model, chunked for lower memory use",
        declared_size_label="1.97 GB",
        locator=f"{_JOYFUSION}/deliberate_v2_vae_chunked.zip",
    ),
    ModelDescriptor(
        id="dreamshaper-v8-original-8bits",
        display_name="DreamShaper v8 (Original 8-bit)",
        description="DreamShaper v8 palettized to 8 bits",
        declared_size_label="1.0 GB",
        locator=f"{_JOYFUSION}/dreamshaper_v8_original_8bits.zip",
    ),
    ModelDescriptor(
        id="coreml-stable-diffusion-2-1-base",
        display_name="Stable Diffusion 2.1 Base",
        description="Apple's reference Core ML conversion (compiled subtree)",
        declared_size_label="2.5 GB",
        locator="apple/coreml-stable-diffusion-2-1-base",
    ),
]

_BY_ID: Dict[str, ModelDescriptor] = {d.id: d for d in CATALOG}


def custom_id_for(locator: str) -> str:
    trimmed = locator.strip()
    for scheme in ("https://", "http://"):
        if trimmed.startswith(scheme):
            trimmed = trimmed[len(scheme):]
    return trimmed.strip("/").replace("/", "-")


def custom_descriptor(locator: str, model_id: Optional[str] = None) -> ModelDescriptor:
    """Descriptor for a locator the user pasted in."""
    trimmed = locator.strip()
    ident = model_id or custom_id_for(trimmed)
    return ModelDescriptor(
        id=ident,
        display_name=ident,
        description="Custom model",
        declared_size_label="~? GB",
        locator=trimmed,
    )


def get_descriptor(model_id: str) -> Optional[ModelDescriptor]:
    return _BY_ID.get(model_id)


def find_descriptor(id_or_locator: str, model_id: Optional[str] = None) -> ModelDescriptor:
    """Catalog entry by id, or a custom descriptor for anything else."""
    found = get_descriptor(id_or_locator.strip())
    if found is not None:
        return found
    return custom_descriptor(id_or_locator, model_id=model_id)
