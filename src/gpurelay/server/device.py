"""Accelerator detection and info."""

from __future__ import annotations

import psutil
import torch

from gpurelay.types import DeviceInfo, VramInfo


def get_device() -> torch.device:
    """Return CUDA if present, then MPS, falling back to CPU."""
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


def _gpu_devices() -> list[str]:
    if torch.cuda.is_available():
        return [torch.cuda.get_device_name(i) for i in range(torch.cuda.device_count())]
    if torch.backends.mps.is_available():
        return ["mps"]
    return []


def _vram() -> VramInfo | None:
    if not torch.cuda.is_available():
        return None
    free = total = 0
    for i in range(torch.cuda.device_count()):
        dev_free, dev_total = torch.cuda.mem_get_info(i)
        free += dev_free
        total += dev_total
    return VramInfo(total=total, used=total - free, free=free)


def device_info(offloading: bool) -> DeviceInfo:
    """Describe the accelerator; *offloading* is whether models sit on it."""
    devices = _gpu_devices()
    if torch.cuda.is_available():
        gpu: str | bool = "cuda"
    elif torch.backends.mps.is_available():
        gpu = "mps"
    else:
        gpu = False
    return DeviceInfo(
        gpu=gpu,
        gpu_offloading=offloading and bool(devices),
        gpu_devices=devices,
        vram=_vram(),
        cpu_cores=psutil.cpu_count() or 1,
    )
