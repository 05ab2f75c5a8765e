import copy
from typing import Any

import msgspec

from lumeflow.application.adapter import MISSING, lookup_path
from lumeflow.domain.exception import InvalidBlockConfigError
from lumeflow.domain.port import BlockBase


class StaticInputBlock(BlockBase):
    """Emits the data configured on the node, ignoring its input."""

    block_type = "input.static"
    name = "Static Input"
    category = "input"
    supports_mock = True

    def validate_config(self, config: dict[str, Any]) -> list[str]:
        if "data" not in config:
            return ["input.static requires config.data"]
        return []

    async def execute(self, config, input, context):
        if "data" not in config:
            raise InvalidBlockConfigError("input.static requires config.data")
        context.logger.info("Emitting static data")
        return self.completed(config["data"])


class PassThroughBlock(BlockBase):
    """Forwards its input unchanged."""

    block_type = "transform.passThrough"
    name = "Pass Through"
    category = "transform"
    supports_mock = True

    async def execute(self, config, input, context):
        return self.completed(input)


class FieldMappingBlock(BlockBase):
    """Applies ``map``, ``rename`` and ``deduplicate`` operations to a record or a list of records.

    ``config.operations`` is a list of ``{"type", "field", "targetField"}`` objects; ``map``
    copies the value at the dotted ``field`` path into ``targetField``.
    """

    block_type = "transform.fieldMapping"
    name = "Field Mapping"
    category = "transform"
    supports_mock = True

    _operations = ("map", "rename", "deduplicate")

    def validate_config(self, config: dict[str, Any]) -> list[str]:
        operations = config.get("operations")
        if not isinstance(operations, list):
            return ["transform.fieldMapping requires a list in config.operations"]
        return [
            f"operation {i} has no type"
            for i, op in enumerate(operations)
            if not isinstance(op, dict) or not op.get("type")
        ]

    async def execute(self, config, input, context):
        operations = config.get("operations")
        if not isinstance(operations, list):
            raise InvalidBlockConfigError("transform.fieldMapping requires a list in config.operations")
        output = copy.deepcopy(input)
        for operation in operations:
            kind = operation.get("type")
            if kind not in self._operations:
                context.logger.warning("Unknown operation type: %s", kind)
                continue
            output = getattr(self, f"_{kind}")(operation, output)
        context.logger.info("Applied %d operations", len(operations))
        return self.completed(output)

    @staticmethod
    def _records(data: Any) -> list[dict]:
        return data if isinstance(data, list) else [data]

    def _map(self, operation: dict, data: Any) -> Any:
        source, target = operation.get("field"), operation.get("targetField")
        if not source or not target:
            return data
        for record in self._records(data):
            if isinstance(record, dict):
                found = lookup_path(record, source.split("."))
                record[target] = None if found is MISSING else found
        return data

    def _rename(self, operation: dict, data: Any) -> Any:
        source, target = operation.get("field"), operation.get("targetField")
        if not source or not target:
            return data
        for record in self._records(data):
            if isinstance(record, dict):
                record[target] = record.pop(source, None)
        return data

    def _deduplicate(self, operation: dict, data: Any) -> Any:
        if not isinstance(data, list):
            return data
        key = operation.get("field") or "id"
        seen = set()
        unique = []
        for record in data:
            value = record.get(key) if isinstance(record, dict) else record
            marker = msgspec.json.encode(value, enc_hook=str)
            if marker in seen:
                continue
            seen.add(marker)
            unique.append(record)
        return unique


class LoggerOutputBlock(BlockBase):
    """Writes its input to the execution log and forwards it unchanged."""

    block_type = "output.logger"
    name = "Logger Output"
    category = "output"
    supports_mock = True

    def validate_config(self, config: dict[str, Any]) -> list[str]:
        if config.get("format", "pretty") not in ("json", "pretty"):
            return ["output.logger format must be 'json' or 'pretty'"]
        return []

    async def execute(self, config, input, context):
        prefix = config.get("prefix") or "[Output]"
        if config.get("format", "pretty") == "json":
            rendered = msgspec.json.format(msgspec.json.encode(input, enc_hook=str), indent=2).decode()
        else:
            rendered = repr(input)
        context.logger.info("%s %s", prefix, rendered)
        return self.completed(input)


BUILTIN_BLOCKS: list[type[BlockBase]] = [
    StaticInputBlock,
    PassThroughBlock,
    FieldMappingBlock,
    LoggerOutputBlock,
]
