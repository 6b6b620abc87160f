"""
bruin - declarative HTTP request collection runner.

Loads collections of .bru request files, resolves a named environment,
executes requests with httpx, evaluates assertions and writes one report
per collection+environment pair.
"""

from .exceptions import (
    BruinConfigError,
    BruinError,
    BruinRunnerError,
    CyclicVariableReferenceError,
    EnvironmentNotFoundError,
    ErrorCode,
    MalformedDescriptorError,
    NotACollectionError,
    ScriptError,
)

__all__ = [
    "__version__",
    "BruinConfigError",
    "BruinError",
    "BruinRunnerError",
    "CyclicVariableReferenceError",
    "EnvironmentNotFoundError",
    "ErrorCode",
    "MalformedDescriptorError",
    "NotACollectionError",
    "ScriptError",
]

__version__ = "1.0.0"
