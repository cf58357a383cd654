#!/usr/bin/env python3
"""
Error taxonomy for deployments.

Every error carries a human-readable guidance string that the CLI prints
instead of a stack trace.
"""


class DeployError(RuntimeError):
    """Base class for all deployment errors."""

    guidance = 'Check the output above for details.'

    def __init__(self, message, guidance=None, **context):
        super().__init__(message)
        self.message = message
        if guidance is not None:
            self.guidance = guidance
        self.context = context


class ConfigurationError(DeployError):
    guidance = 'Fix the value in deploy.yaml (or deploy.local.yaml) and re-run.'


class SecretError(DeployError):
    guidance = 'Export the missing variables or load them from your secrets file before deploying.'


class MissingSecret(SecretError):
    """Raised when one or more required secrets are not set."""

    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(
            f"Missing required secrets: {', '.join(self.missing)}",
            missing=self.missing
        )


class UnresolvedPlaceholder(SecretError):
    """Raised in strict mode when {placeholder} values survive resolution."""

    def __init__(self, placeholders, missing_required=None):
        self.placeholders = list(placeholders)
        self.missing_required = list(missing_required or [])
        message = 'Unresolved secret placeholders: {' + '}, {'.join(self.placeholders) + '}'
        if self.missing_required:
            message += f" (required values affected: {', '.join(self.missing_required)})"
        super().__init__(
            message,
            guidance='Ensure these environment variables are set.',
            placeholders=self.placeholders
        )


class MissingRequiredValue(SecretError):
    """Raised in strict mode when a required environment value ends up empty."""

    def __init__(self, keys):
        self.keys = list(keys)
        super().__init__(
            f"Missing required environment values: {', '.join(self.keys)}",
            keys=self.keys
        )


class PreflightFailure(DeployError):
    """A preflight check failed; nothing on the host has been touched."""

    def __init__(self, check, message, hint=None):
        self.check = check
        super().__init__(
            f"{check}: {message}",
            guidance=hint or 'Fix the failing check on the server and re-run the deployment.',
            check=check
        )


class CacheIntegrityError(DeployError):
    """A cached artifact is missing or unusable. Callers treat this as a cache miss."""


class BackupFailure(DeployError):
    guidance = 'Check free disk space and database credentials, then run db:backup again.'


class MigrationFailure(DeployError):
    """Migrations failed. The controller never restores automatically."""

    def __init__(self, message, backup_path=None, restore_command=None):
        self.backup_path = backup_path
        self.restore_command = restore_command
        if backup_path:
            guidance = (
                f"A database backup was created before the failed migration: {backup_path}\n"
                f"The migration may be partially applied. Inspect the database, then run "
                f"`{restore_command}` to restore from the backup if needed."
            )
        else:
            guidance = 'No backup was taken. Inspect the database before re-running migrations.'
        super().__init__(message, guidance=guidance, backup_path=backup_path)

    def __str__(self):
        return f"{self.message}\n{self.guidance}"


class VerificationFailure(DeployError):
    guidance = 'The release did not pass its health check. See the recent application log above.'

    def __init__(self, message, result=None, **context):
        self.result = result
        super().__init__(message, **context)


class RollbackFailure(DeployError):
    guidance = 'Automatic remediation stopped. Manual intervention is required on the server.'


class CommandError(DeployError):
    """A remote or local command exited non-zero."""

    def __init__(self, command, returncode, stderr='', stdout=''):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        detail = (stderr or stdout or '').strip()
        super().__init__(
            f"Command failed (exit {returncode}): {command}" + (f"\n{detail}" if detail else ''),
            returncode=returncode
        )


class CommandTimeout(CommandError):
    """A command exceeded its timeout and was killed."""

    def __init__(self, command, timeout):
        self.timeout = timeout
        super().__init__(command, -1, stderr=f"timed out after {timeout}s")


class DeployLocked(DeployError):
    guidance = 'Another deployment is running. If it is stale, run deploy:unlock.'
