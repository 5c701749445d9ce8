"""GPU detection and device selection for encoder runtimes."""

import platform
from typing import Any, Dict, List, Optional

import structlog
import torch

logger = structlog.get_logger("gpu_detector")


class GPUDetector:
    """Detects available accelerators and maps device names to torch devices."""

    def __init__(self):
        """Prepare GPU detection state and caches."""
        self.gpu_info: Dict[str, Any] = {}
        self.available_devices: List[str] = []
        self._detection_complete = False

    def detect_gpus(self) -> Dict[str, Any]:
        """Detect available GPU resources."""
        if self._detection_complete:
            return self.gpu_info

        gpu_info: Dict[str, Any] = {
            "platform": platform.system(),
            "architecture": platform.machine(),
            "cuda_available": False,
            "mps_available": False,  # Apple Metal Performance Shaders
            "gpu_count": 0,
            "devices": [],
            "recommended_device": "cpu"
        }

        try:
            if torch.cuda.is_available():
                gpu_info["cuda_available"] = True
                gpu_info["gpu_count"] = torch.cuda.device_count()

                for i in range(gpu_info["gpu_count"]):
                    device_props = torch.cuda.get_device_properties(i)
                    gpu_info["devices"].append({
                        "id": i,
                        "name": device_props.name,
                        "memory_total": device_props.total_memory,
                        "compute_capability": f"{device_props.major}.{device_props.minor}",
                        "type": "cuda"
                    })
                    self.available_devices.append(f"cuda:{i}")

                gpu_info["recommended_device"] = "cuda:0"

            elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
                gpu_info["mps_available"] = True
                gpu_info["gpu_count"] = 1
                gpu_info["devices"].append({"id": 0, "name": "Apple GPU", "type": "mps"})
                self.available_devices.append("mps")
                gpu_info["recommended_device"] = "mps"

        except Exception as e:
            logger.error("GPU detection failed", error=str(e))
            gpu_info["cuda_available"] = False
            gpu_info["mps_available"] = False
            gpu_info["recommended_device"] = "cpu"

        self.available_devices.append("cpu")
        self.gpu_info = gpu_info
        self._detection_complete = True

        logger.info(
            "GPU detection completed",
            cuda_available=gpu_info["cuda_available"],
            mps_available=gpu_info["mps_available"],
            gpu_count=gpu_info["gpu_count"],
            recommended_device=gpu_info["recommended_device"]
        )

        return gpu_info

    def resolve_device(self, requested: str) -> torch.device:
        """Map a configured device name to a usable ``torch.device``.

        Accepts ``cpu``, ``cuda``/``gpu``, ``cuda:N``, ``mps``/``metal`` and
        ``auto``. Unavailable accelerators and unknown names fall back to CPU
        with a warning.
        """
        info = self.detect_gpus()
        name = (requested or "cpu").strip().lower()

        if name == "auto":
            return torch.device(info["recommended_device"])

        if name == "cpu":
            return torch.device("cpu")

        if name in ("cuda", "gpu") or name.startswith("cuda:"):
            index = 0
            if name.startswith("cuda:"):
                try:
                    index = int(name.split(":", 1)[1])
                except ValueError:
                    logger.warning("Invalid CUDA device index, falling back to CPU", device=requested)
                    return torch.device("cpu")
            if info["cuda_available"] and index < info["gpu_count"]:
                return torch.device(f"cuda:{index}")
            logger.warning("CUDA requested but not available, falling back to CPU", device=requested)
            return torch.device("cpu")

        if name in ("mps", "metal"):
            if info["mps_available"]:
                return torch.device("mps")
            logger.warning("MPS requested but not available, falling back to CPU", device=requested)
            return torch.device("cpu")

        logger.warning("Unknown device, falling back to CPU", device=requested)
        return torch.device("cpu")


_detector: Optional[GPUDetector] = None


def get_gpu_detector() -> GPUDetector:
    """Process-wide detector so hardware is probed once."""
    global _detector
    if _detector is None:
        _detector = GPUDetector()
    return _detector


def resolve_device(requested: str) -> torch.device:
    return get_gpu_detector().resolve_device(requested)
