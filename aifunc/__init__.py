"""Call a language model as if it were a typed Python function."""

from aifunc.arguments import NormalizedArguments, normalize_args
from aifunc.coerce import CARRIER_FIELD, coerce
from aifunc.errors import (
    AIFunctionError,
    ConfigurationError,
    ConformanceError,
    InvocationError,
    SchemaError,
    UnrecoverableFormatError,
)
from aifunc.function import AIFunction, create_instance, create_instance_from_config
from aifunc.models import FunctionOptions, FunctionResult, Invocation, SamplingConfig
from aifunc.repair import CompletionRepairPipeline, RepairAttempt, RepairStrategy, Resolution
from aifunc.schema import SchemaKind, SchemaNode, compile_schema, render_type
from aifunc.streaming import TokenStream

__all__ = [
    "AIFunction",
    "AIFunctionError",
    "CARRIER_FIELD",
    "CompletionRepairPipeline",
    "ConfigurationError",
    "ConformanceError",
    "FunctionOptions",
    "FunctionResult",
    "Invocation",
    "InvocationError",
    "NormalizedArguments",
    "RepairAttempt",
    "RepairStrategy",
    "Resolution",
    "SamplingConfig",
    "SchemaError",
    "SchemaKind",
    "SchemaNode",
    "TokenStream",
    "UnrecoverableFormatError",
    "coerce",
    "compile_schema",
    "create_instance",
    "create_instance_from_config",
    "normalize_args",
    "render_type",
]
