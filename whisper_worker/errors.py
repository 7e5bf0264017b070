from __future__ import annotations


class ModelLoadError(RuntimeError):
    def __init__(self, model_name: str, cause: BaseException):
        super().__init__(f"Failed to load model {model_name}: {cause}")
        self.model_name = model_name
        self.cause = cause


class UnknownModelError(ValueError):
    def __init__(self, model_name: str):
        super().__init__(f"Model not found: {model_name}")
        self.model_name = model_name


class InferenceCancelled(Exception):
    pass
