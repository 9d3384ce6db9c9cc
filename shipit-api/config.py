import json
import os
from typing import Callable, List, Mapping, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from errors import ConfigurationError


ENV_PREFIX = "SHIPIT_"
SECRET_ARN_PREFIX = "arn:aws:secretsmanager:"


class ConfigResolver:
    """Resolves dotted configuration keys such as ``aws.es.endpointUrl``.

    Each key is looked up first in the environment (``SHIPIT_AWS_ES_ENDPOINTURL``)
    and then, when ``SHIPIT_SSM_PREFIX`` is set, in SSM Parameter Store under
    ``<prefix>/aws/es/endpointUrl``.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        self._environ = os.environ if environ is None else environ
        self.ssm_prefix = (self._environ.get("SHIPIT_SSM_PREFIX") or "").strip().rstrip("/")
        self._ssm = None

    @staticmethod
    def env_key(key: str) -> str:
        return ENV_PREFIX + key.replace(".", "_").upper()

    def ssm_name(self, key: str) -> str:
        return f"{self.ssm_prefix}/{key.replace('.', '/')}"

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        env_key = self.env_key(key)
        if env_key in self._environ:
            value = self._environ[env_key].strip()
            return value if value else default
        if self.ssm_prefix:
            value = self._read_ssm(self.ssm_name(key))
            if value is not None and value.strip():
                return value.strip()
        return default

    def mandatory(self, key: str) -> str:
        value = self.get(key)
        if value is None:
            raise ConfigurationError(f"Missing config key: {key}")
        return value

    def get_parsed(self, key: str, default, parser: Callable):
        value = self.get(key)
        if value is None:
            return default
        try:
            return parser(value)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid value for config key {key}: {value!r}") from exc

    def get_list(self, key: str) -> Optional[List[str]]:
        raw = self.get(key)
        if raw is None:
            return None
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise ConfigurationError(f"Config key {key} is not a valid JSON list") from exc
            if not isinstance(parsed, list) or not all(isinstance(item, str) for item in parsed):
                raise ConfigurationError(f"Config key {key} must be a list of strings")
            items = parsed
        else:
            items = raw.split(",")
        return [item.strip() for item in items if item.strip()]

    def secret(self, key: str) -> str:
        return self._resolve_secret(key, self.mandatory(key))

    def optional_secret(self, key: str) -> Optional[str]:
        value = self.get(key)
        if value is None:
            return None
        return self._resolve_secret(key, value)

    def _read_ssm(self, name: str) -> Optional[str]:
        try:
            if self._ssm is None:
                self._ssm = boto3.client("ssm")
            response = self._ssm.get_parameter(Name=name, WithDecryption=True)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ParameterNotFound":
                return None
            raise ConfigurationError(f"Unable to read SSM parameter {name}") from exc
        except BotoCoreError as exc:
            raise ConfigurationError(f"Unable to read SSM parameter {name}: {exc}") from exc
        return response.get("Parameter", {}).get("Value")

    def _resolve_secret(self, key: str, value: str) -> str:
        if not value.startswith(SECRET_ARN_PREFIX):
            return value
        try:
            client = boto3.client("secretsmanager")
            response = client.get_secret_value(SecretId=value)
        except (BotoCoreError, ClientError) as exc:
            raise ConfigurationError(f"Unable to resolve secret for config key {key}") from exc
        secret = response.get("SecretString")
        if not secret:
            raise ConfigurationError(f"Secret for config key {key} is empty")
        return secret


class Settings:
    def __init__(self, resolver: Optional[ConfigResolver] = None) -> None:
        resolver = resolver or ConfigResolver()
        self.resolver = resolver

        self.google_client_id = resolver.mandatory("google.clientId")
        self.google_client_secret = resolver.secret("google.clientSecret")
        self.google_redirect_url = resolver.mandatory("google.redirectUrl")
        self.google_domain = resolver.get("google.domain", "ovoenergy.com")

        self.aws_region = resolver.mandatory("aws.region")
        self.es_endpoint_url = resolver.mandatory("aws.es.endpointUrl")
        self.es_index_name = resolver.get("aws.es.indexName", "deployments")
        self.api_key_index_name = resolver.get("aws.es.apiKeyIndexName", "api-keys")
        self.es_timeout_seconds = resolver.get_parsed("aws.es.timeoutSeconds", 5.0, float)
        self.aws_profile = resolver.get("aws.profile", "default")

        self.slack_webhook_url = resolver.mandatory("slack.webhookUrl")

        self.jira_browse_tickets_url = resolver.mandatory("jira.browseTicketsUrl")
        self.jira_issue_api_url = resolver.mandatory("jira.issueApiUrl")
        self.jira_username = resolver.mandatory("jira.username")
        self.jira_password = resolver.secret("jira.password")
        self.jira_project_key = resolver.get("jira.projectKey", "REL")

        self.notification_timeout_seconds = resolver.get_parsed("notifications.timeoutSeconds", 3.0, float)

        self.admin_email_addresses = resolver.get_list("admin.emailAddresses") or []

        self.api_key = resolver.optional_secret("api.key")

        self.cors_origins = resolver.get_list("cors.origins") or ["http://127.0.0.1:5173", "http://localhost:5173"]
