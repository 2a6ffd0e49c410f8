from .json import JSONType

__all__ = ["JSONType"]
