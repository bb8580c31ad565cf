"""Request parsing helpers for the JSON API."""
from flask import request

from storefront.exceptions import ValidationError

_MISSING = object()


def get_json_body() -> dict:
    """Request JSON object, or {} for an empty or non-JSON body."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object.')
    return data


def get_int(data: dict, *keys, default=_MISSING) -> int:
    """
    First present key of ``keys`` as an int (accepts camelCase and snake_case aliases).

    Raises:
        ValidationError: missing without a default, or not an integer
    """
    for key in keys:
        if data.get(key) is not None:
            value = data[key]
            break
    else:
        if default is _MISSING:
            raise ValidationError(f'{keys[0]} is required.', {'field': keys[0]})
        return default

    if isinstance(value, bool):
        raise ValidationError(f'{keys[0]} must be an integer.', {'field': keys[0]})
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip('-').isdigit():
        return int(value.strip())
    raise ValidationError(f'{keys[0]} must be an integer.', {'field': keys[0]})
