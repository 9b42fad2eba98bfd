"""
Deploy stage entry point.

    pipeline-deploy --prefix app --devops-account 111111111111 --target-account 222222222222 \\
        -- cdk deploy --all -c config=prod --method=direct --require-approval never

Exits 2 when the cross account role cannot be assumed, 3 when the profile cannot be
written, and otherwise with the exit status of the deploy command.
"""
import logging
import os
import subprocess

import boto3
import click
import pydantic

from pipeline_monitor.credentials import (
    CredentialBroker,
    CrossAccountGrant,
    Decision,
    ProfileInstallError,
    RoleAssumptionError,
    install_profile,
)
from pipeline_monitor.logging_config import configure_logging

logger = logging.getLogger(__name__)

ROLE_ASSUMPTION_FAILED = 2
PROFILE_INSTALL_FAILED = 3

_AMBIENT_CREDENTIAL_VARIABLES = (
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
)


@click.command(context_settings={"ignore_unknown_options": True})
@click.option("--prefix", envvar="PIPELINE_PREFIX", required=True)
@click.option("--devops-account", envvar="DEVOPS_ACCOUNT_ID", required=True)
@click.option("--target-account", envvar="TARGET_ACCOUNT_ID", required=True)
@click.option(
    "--profile",
    "profile_name",
    default="cross-account-deploy",
    show_default=True,
    help="Named profile that receives the session credentials.",
)
@click.option("--session-name", default="pipeline-deploy", show_default=True)
@click.option("--debug/--no-debug", default=False)
@click.argument("deploy_command", nargs=-1, required=True, type=click.UNPROCESSED)
def main(
    prefix: str,
    devops_account: str,
    target_account: str,
    profile_name: str,
    session_name: str,
    debug: bool,
    deploy_command,
) -> None:
    """Assume the target account deploy role and run DEPLOY_COMMAND under it."""
    configure_logging(level=logging.DEBUG if debug else logging.INFO)

    try:
        grant = CrossAccountGrant(
            prefix=prefix,
            trusting_account=target_account,
            devops_account=devops_account,
        )
    except pydantic.ValidationError as e:
        raise click.UsageError(str(e))

    broker = CredentialBroker(sts_client=boto3.client("sts"))

    try:
        if grant.authorize_assume_role(broker.caller_arn()) != Decision.ALLOW:
            raise RoleAssumptionError(
                role_arn=grant.role_arn,
                reason="caller is not in the trusted devops account",
            )

        credentials = broker.obtain(grant, session_name=session_name)
    except RoleAssumptionError as e:
        click.echo(str(e), err=True)

        raise click.exceptions.Exit(ROLE_ASSUMPTION_FAILED)

    try:
        install_profile(credentials, profile_name)
    except ProfileInstallError as e:
        click.echo(str(e), err=True)

        raise click.exceptions.Exit(PROFILE_INSTALL_FAILED)

    env = {
        key: value
        for key, value in os.environ.items()
        if key not in _AMBIENT_CREDENTIAL_VARIABLES
    }
    env["AWS_PROFILE"] = profile_name

    command = [*deploy_command, "--profile", profile_name]

    logger.info(
        "running deploy command",
        extra={"command": command, "profile_name": profile_name},
    )

    completed = subprocess.run(command, env=env)

    if completed.returncode != 0:
        logger.error(
            "deploy command failed", extra={"returncode": completed.returncode}
        )

    raise click.exceptions.Exit(completed.returncode)
