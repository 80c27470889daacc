# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Validation of backup parameters against the schema declared by an ActionSet."""

from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from .crds import ActionSet, ParameterPair

_JSON_TYPES: Dict[str, type] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
}


class ParameterError(ValueError):
    """Backup parameters not accepted by the ActionSet."""


class Parameters(BaseModel):
    """Base Pydantic model for the parameters of an ActionSet."""

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def verror_to_str(cls, ve: ValidationError) -> str:
        """Convert a Pydantic ValidationError to a string."""
        error_messages = []
        for error in ve.errors():
            field = ".".join(map(str, error["loc"]))
            message = error["msg"].replace("Field ", "")
            error_messages.append(f"'{field}' {message}")
        return "; ".join(error_messages)


def build_parameters_model(name: str, schema: Dict[str, Any]) -> Type[Parameters]:
    """Build a Pydantic model from an ``openAPIV3Schema`` object schema.

    Parameters are passed as strings, so typed properties are validated in lax
    mode: ``"3"`` is a valid integer, ``"three"`` is not.
    """
    properties: Dict[str, Any] = schema.get("properties") or {}
    required = set(schema.get("required") or [])
    fields: Dict[str, Any] = {}
    for i, (prop, prop_schema) in enumerate(sorted(properties.items())):
        prop_schema = prop_schema or {}
        typ: Any = _JSON_TYPES.get(prop_schema.get("type", "string"), str)
        if prop_schema.get("enum"):
            typ = Literal[tuple(prop_schema["enum"])]
        if prop in required:
            fields[f"param_{i}"] = (typ, Field(..., alias=prop))
        else:
            fields[f"param_{i}"] = (Optional[typ], Field(None, alias=prop))
    return create_model(f"{name}Parameters", __base__=Parameters, **fields)


def validate_parameters(
    action_set: ActionSet, parameters: Optional[List[ParameterPair]]
) -> None:
    """Validate backup parameters against the parameters schema of an ActionSet.

    Raises:
        ParameterError: If a parameter is unknown, duplicated, of the wrong type,
            or a required parameter is missing.
    """
    parameters = parameters or []
    schema_spec = action_set.spec.parametersSchema
    schema = schema_spec.openAPIV3Schema if schema_spec is not None else None
    if not schema:
        if parameters:
            raise ParameterError("the actionSet does not declare any parameters schema")
        return

    values: Dict[str, str] = {}
    for param in parameters:
        if param.name in values:
            raise ParameterError(f"duplicated parameter '{param.name}'")
        values[param.name] = param.value

    model = build_parameters_model(action_set.metadata.name.title().replace("-", ""), schema)
    try:
        model.model_validate(values)
    except ValidationError as ve:
        raise ParameterError(model.verror_to_str(ve)) from ve
