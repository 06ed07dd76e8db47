#!/usr/bin/env python3
"""Create or patch the Microsoft Entra app registration for diagramHub Self-Hosted.

The command drives the Azure CLI (``az``) to register a single-page
application in the current tenant and then reconciles its configuration:

* accounts in this organizational directory only (``AzureADMyOrg``)
* SPA redirect URI ``<scheme>://<fqdn>``
* Application ID URI ``api://<client id>``
* delegated scope ``user_impersonation``
* Microsoft Graph ``User.Read`` delegated permission

Every step reads the current registration first and only writes what is
missing, so the command can be re-run safely after a partial failure.
Settings come from CLI options, then environment variables, then ``.env``.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import shutil
import subprocess
import sys
import textwrap
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping

from dotenv import dotenv_values

DEFAULT_APP_NAME = "diagramHub Self-Hosted"
DEFAULT_APP_FQDN = "localhost"
DEFAULT_APP_SCHEME = "http"
DEFAULT_SCOPE_DESCRIPTION = (
    "Allows the application to access diagramHub on behalf of the user"
)
DEFAULT_ENV_FILE = ".env"
SCOPE_NAME = "user_impersonation"
SIGN_IN_AUDIENCE = "AzureADMyOrg"
MS_GRAPH_RESOURCE_APP_ID = "00000003-0000-0000-c000-000000000000"
# Delegated permission id for Microsoft Graph User.Read.
MS_GRAPH_USER_READ_SCOPE_ID = "e1fe6dd8-ba31-4d61-89e7-88639da4683d"
GRAPH_APPLICATION_URL = "https://graph.microsoft.com/v1.0/applications/{object_id}"
AZ_INSTALL_URL = "https://learn.microsoft.com/en-us/cli/azure/install-azure-cli"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

ENV_KEYS = {
    "app_name": "APP_NAME",
    "app_fqdn": "APP_FQDN",
    "app_scheme": "APP_SCHEME",
    "scope_description": "SCOPE_DESCRIPTION",
}

logger = logging.getLogger(__name__)


@dataclass
class AzResult:
    returncode: int
    stdout: str
    stderr: str


@dataclass
class SetupSettings:
    app_name: str = DEFAULT_APP_NAME
    app_fqdn: str = DEFAULT_APP_FQDN
    app_scheme: str = DEFAULT_APP_SCHEME
    scope_description: str = DEFAULT_SCOPE_DESCRIPTION

    @property
    def redirect_uri(self) -> str:
        return f"{self.app_scheme}://{self.app_fqdn}"


@dataclass
class AppRegistration:
    client_id: str
    object_id: str
    created: bool = False


@dataclass
class SetupResult:
    settings: SetupSettings
    app: AppRegistration
    tenant_id: str
    identifier_uri: str
    redirect_uri_added: bool
    scope_added: bool
    permission_added: bool


class SetupError(RuntimeError):
    """Base class for failures that abort the setup run."""


class MissingDependencyError(SetupError):
    """A required external command is not installed."""


class NotAuthenticatedError(SetupError):
    """The Azure CLI has no signed-in session."""


class AzCommandError(SetupError):
    def __init__(
        self,
        operation: str,
        args: List[str],
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        self.operation = operation
        self.az_args = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        message = f"Failed to {operation} (az {' '.join(args[:3])}"
        if returncode is not None:
            message += f", exit code {returncode}"
        message += ")"
        if self.stderr:
            message += f": {self.stderr}"
        super().__init__(message)


def _warn(message: str) -> None:
    print(f"Warning: {message}", file=sys.stderr)


def _first_non_empty(*values: str | None) -> str | None:
    for value in values:
        if value:
            return value
    return None


def _az_executable() -> str:
    # On Windows the CLI is az.cmd, which subprocess only finds by full path.
    executable = shutil.which("az")
    if executable is None:
        raise MissingDependencyError(
            f"Azure CLI is not installed. Please install it from {AZ_INSTALL_URL}"
        )
    return executable


def _run_az(args: List[str]) -> AzResult:
    command = [_az_executable(), *args]
    logger.debug("Running az %s", " ".join(args))
    try:
        completed = subprocess.run(command, capture_output=True, text=True, check=False)
    except FileNotFoundError as exc:
        raise MissingDependencyError(
            f"Azure CLI is not installed. Please install it from {AZ_INSTALL_URL}"
        ) from exc
    logger.debug("az %s exited with %s", args[0] if args else "", completed.returncode)
    return AzResult(completed.returncode, completed.stdout, completed.stderr)


def _az(args: List[str], operation: str) -> str:
    result = _run_az(args)
    if result.returncode != 0:
        raise AzCommandError(operation, args, result.returncode, result.stderr)
    return result.stdout


def _az_json(args: List[str], operation: str) -> Any:
    output = _az(args, operation)
    try:
        return json.loads(output) if output.strip() else None
    except json.JSONDecodeError as exc:
        raise AzCommandError(
            operation, args, stderr=f"unexpected non-JSON output: {output[:200]}"
        ) from exc


def _patch_application(object_id: str, body: Dict[str, Any], operation: str) -> None:
    _az(
        [
            "rest",
            "--method",
            "PATCH",
            "--uri",
            GRAPH_APPLICATION_URL.format(object_id=object_id),
            "--headers",
            "Content-Type=application/json",
            "--body",
            json.dumps(body),
        ],
        operation,
    )


def _show_application(client_id: str) -> Dict[str, Any]:
    payload = _az_json(
        ["ad", "app", "show", "--id", client_id, "--output", "json"],
        "read application registration",
    )
    return payload or {}


def _determine_env_file(argv: list[str]) -> str:
    env_file = DEFAULT_ENV_FILE
    for idx, arg in enumerate(argv):
        if arg in ("--env-file", "-e"):
            if idx + 1 < len(argv):
                env_file = argv[idx + 1]
        elif arg.startswith("--env-file="):
            env_file = arg.split("=", 1)[1]
        elif arg.startswith("-e="):
            env_file = arg.split("=", 1)[1]
    return env_file


def _load_setup_defaults(
    env_file: str, environ: Mapping[str, str] | None = None
) -> SetupSettings:
    """Resolve defaults from the process environment, then the dotenv file."""
    environ = os.environ if environ is None else environ
    path = Path(env_file)
    file_values: Dict[str, str | None] = dict(dotenv_values(path)) if path.exists() else {}
    defaults = SetupSettings()
    for field, key in ENV_KEYS.items():
        value = _first_non_empty(environ.get(key), file_values.get(key))
        if value:
            setattr(defaults, field, value)
    return defaults


def resolve_settings(
    defaults: SetupSettings,
    app_name: str | None = None,
    app_fqdn: str | None = None,
    app_scheme: str | None = None,
    scope_description: str | None = None,
) -> SetupSettings:
    return SetupSettings(
        app_name=_first_non_empty(app_name, defaults.app_name) or DEFAULT_APP_NAME,
        app_fqdn=_first_non_empty(app_fqdn, defaults.app_fqdn) or DEFAULT_APP_FQDN,
        app_scheme=_first_non_empty(app_scheme, defaults.app_scheme) or DEFAULT_APP_SCHEME,
        scope_description=_first_non_empty(scope_description, defaults.scope_description)
        or DEFAULT_SCOPE_DESCRIPTION,
    )


def check_prerequisites() -> None:
    _az_executable()
    if _run_az(["account", "show", "--output", "none"]).returncode != 0:
        raise NotAuthenticatedError(
            "You are not logged in to Azure. Please run 'az login' first."
        )


def find_or_create_application(app_name: str) -> AppRegistration:
    existing = _az_json(
        ["ad", "app", "list", "--display-name", app_name, "--output", "json"],
        "list application registrations",
    ) or []
    if existing:
        if len(existing) > 1:
            _warn(
                f"Found multiple app registrations named '{app_name}'. Using the first match."
            )
        else:
            print("  Found an existing application registration; it will be patched.")
        match = existing[0]
        if not match.get("appId") or not match.get("id"):
            raise AzCommandError(
                "list application registrations",
                ["ad", "app", "list", "--display-name", app_name],
                stderr="first match did not include appId and id",
            )
        return AppRegistration(client_id=match["appId"], object_id=match["id"])

    args = [
        "ad",
        "app",
        "create",
        "--display-name",
        app_name,
        "--sign-in-audience",
        SIGN_IN_AUDIENCE,
        "--output",
        "json",
    ]
    created = _az_json(args, "create application registration") or {}
    if not created.get("appId") or not created.get("id"):
        raise AzCommandError(
            "create application registration",
            args,
            stderr="response did not include appId and id",
        )
    return AppRegistration(client_id=created["appId"], object_id=created["id"], created=True)


def merge_redirect_uris(current: List[str] | None, redirect_uri: str) -> List[str]:
    uris = list(current or [])
    if redirect_uri not in uris:
        uris.append(redirect_uri)
    return uris


def reconcile_redirect_uri(app: AppRegistration, redirect_uri: str) -> bool:
    details = _show_application(app.client_id)
    current = (details.get("spa") or {}).get("redirectUris") or []
    updated = merge_redirect_uris(current, redirect_uri)
    if len(updated) == len(current):
        return False
    # PATCH replaces the list wholesale.
    _patch_application(
        app.object_id, {"spa": {"redirectUris": updated}}, "update SPA redirect URIs"
    )
    return True


def set_identifier_uri(app: AppRegistration) -> str:
    identifier_uri = f"api://{app.client_id}"
    _az(
        [
            "ad",
            "app",
            "update",
            "--id",
            app.client_id,
            "--set",
            f"identifierUris={json.dumps([identifier_uri])}",
        ],
        "set application ID URI",
    )
    return identifier_uri


def _new_scope_id() -> str:
    return str(uuid.uuid4())


def build_permission_scope(name: str, description: str, scope_id: str) -> Dict[str, Any]:
    return {
        "adminConsentDescription": description,
        "adminConsentDisplayName": name,
        "id": scope_id,
        "isEnabled": True,
        "type": "User",
        "userConsentDescription": description,
        "userConsentDisplayName": name,
        "value": name,
    }


def merge_permission_scopes(
    scopes: List[Dict[str, Any]] | None,
    name: str,
    description: str,
    id_factory: Callable[[], str] = _new_scope_id,
) -> List[Dict[str, Any]]:
    """Return ``scopes`` with a ``name`` scope appended when none exists.

    Existing records are returned untouched so a scope id is never regenerated.
    """
    merged = list(scopes or [])
    if any(scope.get("value") == name for scope in merged):
        return merged
    merged.append(build_permission_scope(name, description, id_factory()))
    return merged


def reconcile_permission_scope(app: AppRegistration, name: str, description: str) -> bool:
    details = _show_application(app.client_id)
    current = (details.get("api") or {}).get("oauth2PermissionScopes") or []
    updated = merge_permission_scopes(current, name, description)
    if len(updated) == len(current):
        return False
    _patch_application(
        app.object_id,
        {"api": {"oauth2PermissionScopes": updated}},
        f"add scope '{name}'",
    )
    return True


def has_delegated_permission(
    required_resource_access: List[Dict[str, Any]] | None,
    resource_app_id: str,
    permission_id: str,
) -> bool:
    entry = next(
        (
            item
            for item in required_resource_access or []
            if item.get("resourceAppId") == resource_app_id
        ),
        None,
    )
    resource_access = (entry or {}).get("resourceAccess") or []
    return any(
        access.get("id") == permission_id and access.get("type") == "Scope"
        for access in resource_access
    )


def reconcile_graph_permission(app: AppRegistration) -> bool:
    details = _show_application(app.client_id)
    if has_delegated_permission(
        details.get("requiredResourceAccess"),
        MS_GRAPH_RESOURCE_APP_ID,
        MS_GRAPH_USER_READ_SCOPE_ID,
    ):
        return False
    _az(
        [
            "ad",
            "app",
            "permission",
            "add",
            "--id",
            app.client_id,
            "--api",
            MS_GRAPH_RESOURCE_APP_ID,
            "--api-permissions",
            f"{MS_GRAPH_USER_READ_SCOPE_ID}=Scope",
        ],
        "add Microsoft Graph User.Read permission",
    )
    return True


def get_tenant_id() -> str:
    args = ["account", "show", "--query", "tenantId", "--output", "tsv"]
    tenant_id = _az(args, "retrieve tenant ID").strip()
    if not tenant_id:
        raise AzCommandError("retrieve tenant ID", args, stderr="no tenant ID returned")
    return tenant_id


def run_setup(settings: SetupSettings) -> SetupResult:
    redirect_uri = settings.redirect_uri

    print("Step 1: Creating (or reusing) application registration...")
    app = find_or_create_application(settings.app_name)
    print(
        textwrap.indent(
            f"✓ Application ready\nClient ID: {app.client_id}\nObject ID: {app.object_id}",
            "  ",
        )
    )

    print("\nStep 2: Configuring as Single-Page Application...")
    redirect_uri_added = reconcile_redirect_uri(app, redirect_uri)
    if redirect_uri_added:
        print(f"  ✓ Redirect URI added: {redirect_uri}")
    else:
        print(f"  ✓ Redirect URI already present: {redirect_uri}")

    print("\nStep 3: Exposing API...")
    identifier_uri = set_identifier_uri(app)
    print(f"  ✓ API exposed with URI: {identifier_uri}")

    print("\nStep 4: Adding scope...")
    scope_added = reconcile_permission_scope(app, SCOPE_NAME, settings.scope_description)
    if scope_added:
        print(f"  ✓ Scope '{SCOPE_NAME}' added")
    else:
        print(f"  ✓ Scope '{SCOPE_NAME}' already exists")

    print("\nStep 5: Adding default Microsoft Graph permission (User.Read)...")
    permission_added = reconcile_graph_permission(app)
    if permission_added:
        print("  ✓ Microsoft Graph delegated permission 'User.Read' added")
        print(
            "Note: Depending on your tenant policies, you may need to grant consent "
            "for this permission in the Entra portal.",
            file=sys.stderr,
        )
    else:
        print("  ✓ Microsoft Graph delegated permission 'User.Read' already present")

    print("\nStep 6: Retrieving tenant information...")
    tenant_id = get_tenant_id()
    print(f"  ✓ Tenant ID: {tenant_id}")

    return SetupResult(
        settings=settings,
        app=app,
        tenant_id=tenant_id,
        identifier_uri=identifier_uri,
        redirect_uri_added=redirect_uri_added,
        scope_added=scope_added,
        permission_added=permission_added,
    )


def format_summary(result: SetupResult) -> str:
    return textwrap.dedent(
        f"""
        Setup complete!
        ===============
        Add the following to your .env file:

        ENTRA_TENANT_ID={result.tenant_id}
        ENTRA_CLIENT_ID={result.app.client_id}

        Additional configuration:
          - Application Name: {result.settings.app_name}
          - Redirect URI: {result.settings.redirect_uri}
        """
    ).strip()


def handle_setup(args: argparse.Namespace) -> SetupResult:
    settings = resolve_settings(
        args.env_defaults,
        app_name=args.app_name,
        app_fqdn=args.app_fqdn,
        app_scheme=args.app_scheme,
        scope_description=args.scope_description,
    )
    print("diagramHub Entra ID Setup\n=========================")
    check_prerequisites()
    print(
        "\n".join(
            [
                "Configuration:",
                f"  Application Name: {settings.app_name}",
                f"  App FQDN: {settings.app_fqdn}",
                f"  App Scheme: {settings.app_scheme}",
                f"  Redirect URI: {settings.redirect_uri}",
            ]
        )
    )
    print()
    result = run_setup(settings)
    print()
    print(format_summary(result))
    return result


def build_parser(defaults: SetupSettings, env_file: str) -> argparse.ArgumentParser:
    description = textwrap.dedent(
        """
        Create (or patch) the Microsoft Entra app registration for diagramHub Self-Hosted.

        Requires the Azure CLI and an active `az login` session. Safe to re-run:
        redirect URIs, scopes and permissions are only added when missing.
        """
    ).strip()
    epilog = textwrap.dedent(
        """
        Examples:
          APP_FQDN=app.example.com APP_SCHEME=https %(prog)s
          %(prog)s --app-name "diagramHub Self-Hosted" --app-fqdn localhost --app-scheme http
        """
    ).strip()
    parser = argparse.ArgumentParser(
        description=description,
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.set_defaults(env_defaults=defaults)
    parser.add_argument(
        "--env-file",
        "-e",
        default=env_file,
        help="Path to a .env file with fallback settings (default: %(default)s).",
    )
    parser.add_argument(
        "--app-name",
        default=None,
        help=f"Application display name (env: APP_NAME, default: {defaults.app_name!r}).",
    )
    parser.add_argument(
        "--app-fqdn",
        default=None,
        help=f"Public host name of the app (env: APP_FQDN, default: {defaults.app_fqdn!r}).",
    )
    parser.add_argument(
        "--app-scheme",
        default=None,
        help=f"URL scheme for the redirect URI (env: APP_SCHEME, default: {defaults.app_scheme!r}).",
    )
    parser.add_argument(
        "--scope-description",
        default=None,
        help="Consent text for the user_impersonation scope (env: SCOPE_DESCRIPTION).",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Log every Azure CLI invocation.",
    )
    parser.set_defaults(func=handle_setup)
    return parser


def main(argv: list[str] | None = None) -> None:
    if argv is None:
        argv = sys.argv[1:]
    env_file = _determine_env_file(argv)
    defaults = _load_setup_defaults(env_file)
    parser = build_parser(defaults, env_file)
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format=LOG_FORMAT,
    )
    logger.setLevel(logging.DEBUG if args.verbose else logging.WARNING)
    try:
        args.func(args)
    except SetupError as exc:
        parser.exit(status=1, message=f"Error: {exc}\n")


if __name__ == "__main__":
    main()
