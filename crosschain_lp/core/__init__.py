from crosschain_lp.core.adapters.BaseAdapter import BaseAdapter
from crosschain_lp.core.config import PipelineSettings, load_settings
from crosschain_lp.core.errors import ErrorCode, PipelineError

__all__ = [
    "BaseAdapter",
    "ErrorCode",
    "PipelineError",
    "PipelineSettings",
    "load_settings",
]
