import collections.abc


def drop_empty(obj):
    """Recursively remove None and empty-string values from mappings."""
    if isinstance(obj, collections.abc.Mapping):
        return {
            key: drop_empty(value)
            for key, value in obj.items()
            if value is not None and value != ""
        }
    if isinstance(obj, list):
        return [drop_empty(item) for item in obj]
    return obj


def deep_merge(base, override):
    merged = dict(base)
    for k, v in override.items():
        if isinstance(v, collections.abc.Mapping):
            merged[k] = deep_merge(merged.get(k, {}), v)
        else:
            merged[k] = v
    return merged


def to_bool(value):
    """Read a YAML bool, or a templated string such as "true" / "0"."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "yes", "on", "1"):
        return True
    if text in ("false", "no", "off", "0"):
        return False
    raise ValueError(f"Cannot interpret '{value}' as a boolean")
