__version__ = "0.1.0"

from crosschain_lp.core import BaseAdapter, PipelineError, PipelineSettings

__all__ = [
    "__version__",
    "BaseAdapter",
    "PipelineError",
    "PipelineSettings",
]
