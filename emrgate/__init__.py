"""EMRGate: request security edge and session lifecycle for the EMR backend."""

__version__ = "1.0.0"
