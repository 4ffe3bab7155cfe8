from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .core.errors import ConfigurationError

DEFAULT_TIMEOUT = 10.0


class ValidationMethod(str, Enum):
    CAS1 = "validate"
    CAS2 = "serviceValidate"


class ResponseDialect(str, Enum):
    STANDARD = "standard"
    SLATE = "slate"


class AttributeMergePolicy(str, Enum):
    # configured rules replace auto-derived values of the same name
    REPLACE = "replace"
    # configured rules are appended, then the combined list is deduplicated
    APPEND = "append"


class DirectoryFailurePolicy(str, Enum):
    FATAL = "fatal"
    ADVISORY = "advisory"


class AttributeExtractionRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    query: str

    @property
    def is_absolute(self) -> bool:
        return self.query.startswith("/")


class DirectoryConfig(BaseModel):
    """
    Settings handed to the directory lookup that runs after CAS validation.

    Either `authsource` names a registered directory source, or `servers`
    (plus free-form `options`) describe one inline. With neither, no
    directory merge happens.
    """
    model_config = ConfigDict(frozen=True)

    authsource: Optional[str] = None
    servers: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    on_failure: DirectoryFailurePolicy = DirectoryFailurePolicy.FATAL

    @property
    def is_configured(self) -> bool:
        return bool(self.authsource or self.servers)

    @classmethod
    def from_mapping(cls, ldap: Optional[Mapping[str, Any]]) -> "DirectoryConfig":
        if not ldap:
            return cls()
        options = {k: v for k, v in ldap.items() if k not in ("authsource", "servers", "on_failure")}
        try:
            on_failure = DirectoryFailurePolicy(ldap.get("on_failure", DirectoryFailurePolicy.FATAL))
        except ValueError:
            raise ConfigurationError(f"ldap.on_failure must be 'fatal' or 'advisory', got {ldap['on_failure']!r}")
        return cls(
            authsource=ldap.get("authsource") or None,
            servers=ldap.get("servers") or None,
            options=options,
            on_failure=on_failure,
        )


class CasSourceConfig(BaseModel):
    """Immutable configuration of one CAS authentication source."""

    model_config = ConfigDict(frozen=True)

    validation_method: ValidationMethod
    validation_url: str
    login_url: str
    logout_url: Optional[str] = None
    attribute_rules: Tuple[AttributeExtractionRule, ...] = ()
    response_dialect: ResponseDialect = ResponseDialect.STANDARD
    merge_policy: AttributeMergePolicy = AttributeMergePolicy.REPLACE
    timeout: float = DEFAULT_TIMEOUT
    directory: DirectoryConfig = Field(default_factory=DirectoryConfig)

    @classmethod
    def from_authsource(cls, config: Mapping[str, Any]) -> "CasSourceConfig":
        """
        Build the configuration from an authsource entry of the form
        {"cas": {"login": ..., "serviceValidate": ..., "attributes": {...}}, "ldap": {...}}.
        serviceValidate is preferred over validate when both are set.
        """
        cas = config.get("cas")
        if not isinstance(cas, Mapping):
            raise ConfigurationError("cas configuration block not specified")

        if cas.get("serviceValidate"):
            method = ValidationMethod.CAS2
            validation_url = cas["serviceValidate"]
        elif cas.get("validate"):
            method = ValidationMethod.CAS1
            validation_url = cas["validate"]
        else:
            raise ConfigurationError("validate or serviceValidate not specified")

        login_url = cas.get("login")
        if not login_url:
            raise ConfigurationError("cas login URL not specified")

        attributes = cas.get("attributes") or {}
        if not isinstance(attributes, Mapping):
            raise ConfigurationError("cas.attributes must map attribute names to queries")
        rules = tuple(
            AttributeExtractionRule(name=name, query=str(query))
            for name, query in attributes.items()
        )

        dialect = ResponseDialect.SLATE if cas.get("slate.enabled") else ResponseDialect.STANDARD

        try:
            merge_policy = AttributeMergePolicy(cas.get("attributes.merge", AttributeMergePolicy.REPLACE))
        except ValueError:
            raise ConfigurationError(
                f"cas.attributes.merge must be 'replace' or 'append', got {cas['attributes.merge']!r}"
            )

        timeout = float(cas.get("timeout", DEFAULT_TIMEOUT))
        if timeout <= 0:
            raise ConfigurationError("cas.timeout must be positive")

        return cls(
            validation_method=method,
            validation_url=validation_url,
            login_url=login_url,
            logout_url=cas.get("logout") or None,
            attribute_rules=rules,
            response_dialect=dialect,
            merge_policy=merge_policy,
            timeout=timeout,
            directory=DirectoryConfig.from_mapping(config.get("ldap")),
        )
