from medbom.exceptions.handlers import (
    BOMEngineError,
    ConcurrencyConflictError,
    ConfigurationUnsupportedError,
    CycleDetectedError,
    GenerationTimeoutError,
    ImmutableBOMError,
    NotFoundError,
    RuleDefinitionError,
    StateTransitionError,
    SubstitutionUnresolvedError,
    ValidationError,
)

__all__ = [
    "BOMEngineError",
    "ValidationError",
    "ConfigurationUnsupportedError",
    "CycleDetectedError",
    "SubstitutionUnresolvedError",
    "GenerationTimeoutError",
    "ConcurrencyConflictError",
    "RuleDefinitionError",
    "StateTransitionError",
    "ImmutableBOMError",
    "NotFoundError",
]
