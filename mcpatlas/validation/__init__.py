from mcpatlas.validation.protocol import FailureReason, ValidationResult, run_handshake
from mcpatlas.validation.sandbox import DirectBackend, DockerBackend, SandboxBackend, SandboxRunner

__all__ = [
    "FailureReason",
    "ValidationResult",
    "run_handshake",
    "SandboxBackend",
    "DockerBackend",
    "DirectBackend",
    "SandboxRunner",
]
