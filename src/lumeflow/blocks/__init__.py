"""
Built-in blocks and the base class for service-calling blocks.
"""

from lumeflow.blocks.builtin import (
    BUILTIN_BLOCKS,
    FieldMappingBlock,
    LoggerOutputBlock,
    PassThroughBlock,
    StaticInputBlock,
)
from lumeflow.blocks.service import ServiceBlock

__all__ = [
    "BUILTIN_BLOCKS",
    "FieldMappingBlock",
    "LoggerOutputBlock",
    "PassThroughBlock",
    "ServiceBlock",
    "StaticInputBlock",
]
