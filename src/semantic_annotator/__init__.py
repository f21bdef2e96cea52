__version__ = "0.1.0"

from .annotator import (
    Annotator as Annotator,
)

from .config import (
    PipelineConfig as PipelineConfig,
    load_config as load_config,
)

from .exceptions import (
    AnnotatorError as AnnotatorError,
    ValidationError as ValidationError,
    DataIntegrityError as DataIntegrityError,
    EntityNotFoundError as EntityNotFoundError,
    DatabaseError as DatabaseError,
    PersistenceError as PersistenceError,
    ExternalServiceError as ExternalServiceError,
    JobStateError as JobStateError,
    ParseError as ParseError,
)

from .models import (
    NOT_CLASSIFIED as NOT_CLASSIFIED,
    NO_DOMAIN as NO_DOMAIN,
    UNCLASSIFIED_POS as UNCLASSIFIED_POS,
    PosSource as PosSource,
    ClassificationSource as ClassificationSource,
    Provenance as Provenance,
    SourceTag as SourceTag,
    JobStatus as JobStatus,
    Token as Token,
    AnnotatedToken as AnnotatedToken,
    LexiconEntry as LexiconEntry,
    TagsetNode as TagsetNode,
    ClassificationRecord as ClassificationRecord,
    BatchJob as BatchJob,
)

from .lexicon import (
    LexiconStore as LexiconStore,
    parse_notation as parse_notation,
)

from .tagset import (
    SemanticTagset as SemanticTagset,
)

from .morphology import (
    RuleEngine as RuleEngine,
)

from .pos import (
    POSResolver as POSResolver,
    POSResult as POSResult,
    tokenize as tokenize,
)

from .classifier import (
    SemanticDomainClassifier as SemanticDomainClassifier,
)

from .propagation import (
    PropagationEngine as PropagationEngine,
    SynonymGraph as SynonymGraph,
)

from .keyness import (
    compute_keyness as compute_keyness,
)

# Batch module - import as submodule to avoid naming conflicts
from . import batch

__all__ = [
    # Batch module
    "batch",
    # Facade
    "Annotator",
    # Configuration
    "PipelineConfig",
    "load_config",
    # Exceptions
    "AnnotatorError",
    "ValidationError",
    "DataIntegrityError",
    "EntityNotFoundError",
    "DatabaseError",
    "PersistenceError",
    "ExternalServiceError",
    "JobStateError",
    "ParseError",
    # Constants and enums
    "NOT_CLASSIFIED",
    "NO_DOMAIN",
    "UNCLASSIFIED_POS",
    "PosSource",
    "ClassificationSource",
    "Provenance",
    "SourceTag",
    "JobStatus",
    # Data classes
    "Token",
    "AnnotatedToken",
    "LexiconEntry",
    "TagsetNode",
    "ClassificationRecord",
    "BatchJob",
    # Components
    "LexiconStore",
    "parse_notation",
    "SemanticTagset",
    "RuleEngine",
    "POSResolver",
    "POSResult",
    "tokenize",
    "SemanticDomainClassifier",
    "PropagationEngine",
    "SynonymGraph",
    "compute_keyness",
]
