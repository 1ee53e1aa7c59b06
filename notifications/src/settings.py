from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

import yaml

from notifications.src.errors import ValidationError
from notifications.src.services import (
    CONSOLE_SERVICE_NAME,
    KNOWN_SERVICE_TYPES,
    Notifier,
    ServiceConfig,
)

LOGGER = logging.getLogger(__name__)

RawPayload = Mapping[str, str | bytes]

# Dots may separate name segments but never end a name, so "$token." is "token".
_SECRET_REFERENCE = re.compile(r"\$([A-Za-z0-9_-]+(?:\.[A-Za-z0-9_-]+)*)")


@dataclass(frozen=True)
class TriggerCondition:
    when: str
    send: tuple[str, ...]
    description: str = ""
    once_per: str = ""


@dataclass(frozen=True)
class Subscription:
    recipients: tuple[str, ...]
    triggers: tuple[str, ...]
    selector: str = ""


@dataclass(frozen=True)
class ConfigSnapshot:
    """Validated configuration built from one settings/secrets pair.

    ``version`` is the merge attempt that produced the snapshot; the
    lifecycle manager uses it to refuse snapshots older than the running one.
    """

    version: int
    services: Mapping[str, ServiceConfig]
    templates: Mapping[str, Mapping[str, Any]]
    triggers: Mapping[str, tuple[TriggerCondition, ...]]
    subscriptions: tuple[Subscription, ...]
    default_triggers: tuple[str, ...]
    context: Mapping[str, str]
    notifier: Notifier = field(compare=False, repr=False)


def _as_text(key: str, value: str | bytes) -> str:
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValidationError(f"value of {key} is not valid UTF-8") from exc
    return value


def _load_yaml(key: str, raw: str | bytes) -> Any:
    try:
        return yaml.safe_load(_as_text(key, raw))
    except yaml.YAMLError as exc:
        raise ValidationError(f"failed to parse {key}: {exc}") from exc


def _string_list(key: str, value: Any, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValidationError(f"{key}: {field_name} must be a list of strings")
    return tuple(value)


def _substitute_secrets(value: Any, secrets: RawPayload, key: str) -> Any:
    """Replace ``$name`` placeholders in every string of *value* with secret values.

    Only referenced secret values are decoded, so unrelated binary keys are fine.
    """
    if isinstance(value, str):

        def _replace(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in secrets:
                raise ValidationError(
                    f"{key} references secret key {name!r} which is not defined"
                )
            return _as_text(f"secret key {name}", secrets[name])

        return _SECRET_REFERENCE.sub(_replace, value)
    if isinstance(value, dict):
        return {k: _substitute_secrets(v, secrets, key) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute_secrets(v, secrets, key) for v in value]
    return value


def _parse_service(key: str, raw: str | bytes, secrets: RawPayload) -> ServiceConfig:
    parts = key.split(".", 2)
    service_type = parts[1] if len(parts) > 1 else ""
    name = parts[2] if len(parts) > 2 else service_type
    if not service_type or not name:
        raise ValidationError(f"invalid service key {key!r}")
    if service_type not in KNOWN_SERVICE_TYPES:
        raise ValidationError(f"{key}: unknown service type {service_type!r}")
    if name == CONSOLE_SERVICE_NAME:
        raise ValidationError(f"{key}: service name {name!r} is reserved")

    options = _load_yaml(key, raw)
    if options is None:
        options = {}
    if not isinstance(options, dict):
        raise ValidationError(f"{key} must be a mapping")
    return ServiceConfig(
        name=name,
        type=service_type,
        options=MappingProxyType(_substitute_secrets(options, secrets, key)),
    )


def _parse_template(key: str, raw: str | bytes) -> Mapping[str, Any]:
    template = _load_yaml(key, raw)
    if not isinstance(template, dict):
        raise ValidationError(f"{key} must be a mapping")
    if "message" in template and not isinstance(template["message"], str):
        raise ValidationError(f"{key}: message must be a string")
    return MappingProxyType(template)


def _parse_trigger(key: str, raw: str | bytes) -> tuple[TriggerCondition, ...]:
    conditions = _load_yaml(key, raw)
    if not isinstance(conditions, list) or not conditions:
        raise ValidationError(f"{key} must be a non-empty list of conditions")

    parsed = []
    for index, condition in enumerate(conditions):
        where = f"{key}[{index}]"
        if not isinstance(condition, dict):
            raise ValidationError(f"{where} must be a mapping")
        when = condition.get("when")
        if not isinstance(when, str) or not when.strip():
            raise ValidationError(f"{where}: when must be a non-empty string")
        send = _string_list(where, condition.get("send"), "send")
        if not send:
            raise ValidationError(f"{where}: send must list at least one template")
        parsed.append(
            TriggerCondition(
                when=when,
                send=send,
                description=str(condition.get("description") or ""),
                once_per=str(condition.get("oncePer") or ""),
            )
        )
    return tuple(parsed)


def _parse_subscriptions(raw: str | bytes) -> tuple[Subscription, ...]:
    items = _load_yaml("subscriptions", raw)
    if items is None:
        return ()
    if not isinstance(items, list):
        raise ValidationError("subscriptions must be a list")

    subscriptions = []
    for index, item in enumerate(items):
        where = f"subscriptions[{index}]"
        if not isinstance(item, dict):
            raise ValidationError(f"{where} must be a mapping")
        selector = item.get("selector") or ""
        if not isinstance(selector, str):
            raise ValidationError(f"{where}: selector must be a string")
        subscriptions.append(
            Subscription(
                recipients=_string_list(where, item.get("recipients"), "recipients"),
                triggers=_string_list(where, item.get("triggers"), "triggers"),
                selector=selector,
            )
        )
    return tuple(subscriptions)


def _parse_context(raw: str | bytes) -> Mapping[str, str]:
    context = _load_yaml("context", raw)
    if context is None:
        return MappingProxyType({})
    if not isinstance(context, dict):
        raise ValidationError("context must be a mapping")
    return MappingProxyType({str(k): "" if v is None else str(v) for k, v in context.items()})


def recipient_service(recipient: str) -> tuple[str, str]:
    """Split a ``service:destination`` recipient into its two parts."""
    service, _, destination = recipient.partition(":")
    return service.strip(), destination.strip()


def parse_config(settings: RawPayload, secrets: RawPayload, version: int = 0) -> ConfigSnapshot:
    """Build a :class:`ConfigSnapshot` from raw ConfigMap and Secret data.

    Every cross-reference is resolved here: trigger conditions must send
    defined templates, subscriptions and default triggers must name defined
    triggers, recipients must name defined services, and ``$key``
    placeholders in service options must name keys present in the secret.
    Raises :class:`ValidationError` on the first problem found.
    """
    services: dict[str, ServiceConfig] = {}
    templates: dict[str, Mapping[str, Any]] = {}
    triggers: dict[str, tuple[TriggerCondition, ...]] = {}
    subscriptions: tuple[Subscription, ...] = ()
    default_triggers: tuple[str, ...] = ()
    context: Mapping[str, str] = MappingProxyType({})

    for key in sorted(settings):
        raw = settings[key]
        if key.startswith("service."):
            service = _parse_service(key, raw, secrets)
            if service.name in services:
                raise ValidationError(f"service {service.name!r} is defined more than once")
            services[service.name] = service
        elif key.startswith("template."):
            templates[key[len("template."):]] = _parse_template(key, raw)
        elif key.startswith("trigger."):
            triggers[key[len("trigger."):]] = _parse_trigger(key, raw)
        elif key == "subscriptions":
            subscriptions = _parse_subscriptions(raw)
        elif key == "defaultTriggers":
            default_triggers = _string_list(key, _load_yaml(key, raw), "defaultTriggers")
        elif key == "context":
            context = _parse_context(raw)
        else:
            LOGGER.debug("Ignoring unknown settings key %s", key)

    for trigger_name, conditions in triggers.items():
        for condition in conditions:
            for template_name in condition.send:
                if template_name not in templates:
                    raise ValidationError(
                        f"trigger {trigger_name!r} references undefined template {template_name!r}"
                    )

    for trigger_name in default_triggers:
        if trigger_name not in triggers:
            raise ValidationError(f"defaultTriggers references undefined trigger {trigger_name!r}")

    for subscription in subscriptions:
        for trigger_name in subscription.triggers:
            if trigger_name not in triggers:
                raise ValidationError(
                    f"subscription references undefined trigger {trigger_name!r}"
                )
        for recipient in subscription.recipients:
            service_name, _ = recipient_service(recipient)
            if service_name != CONSOLE_SERVICE_NAME and service_name not in services:
                raise ValidationError(
                    f"subscription recipient {recipient!r} references undefined service "
                    f"{service_name!r}"
                )

    return ConfigSnapshot(
        version=version,
        services=MappingProxyType(services),
        templates=MappingProxyType(templates),
        triggers=MappingProxyType(triggers),
        subscriptions=subscriptions,
        default_triggers=default_triggers,
        context=context,
        notifier=Notifier(),
    )
