"""
Cross-account deployment hand-off.

The devops account runs the pipeline; the deploy stage needs to act in a target account.
The target account holds a role that only the devops account may assume, whose policy only
reaches resources under the pipeline's naming convention. The deploy stage assumes that
role, installs the session credentials into a named profile, and runs the deploy command
against that profile only.
"""
import dataclasses
import enum
import logging
import re
import subprocess
import typing
from datetime import datetime

import botocore.exceptions
import pydantic

logger = logging.getLogger(__name__)

AWS_ACCOUNT_ID_PATTERN = r"^\d{12}$"


class Decision(str, enum.Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


def _resource_name(pattern: str) -> str:
    """The part of an ARN pattern naming resources, without a leading resource type."""
    parts = pattern.split(":", 5)

    if len(parts) < 6:
        return pattern

    service, resource = parts[2], parts[5]

    # s3 resources start with the bucket name rather than a type
    if service == "s3" or "/" not in resource:
        return resource

    return resource.split("/", 1)[1]


class CrossAccountGrant(pydantic.BaseModel):
    prefix: str = pydantic.Field(pattern=r"^[A-Za-z0-9][A-Za-z0-9_+=,.@-]*$")
    trusting_account: str = pydantic.Field(pattern=AWS_ACCOUNT_ID_PATTERN)
    devops_account: str = pydantic.Field(pattern=AWS_ACCOUNT_ID_PATTERN)
    permitted_resource_patterns: typing.List[str] = pydantic.Field(
        default_factory=list
    )

    @pydantic.field_validator("permitted_resource_patterns")
    @classmethod
    def _reject_unscoped_patterns(cls, patterns: typing.List[str]) -> typing.List[str]:
        for pattern in patterns:
            if not _resource_name(pattern).strip("*/ "):
                raise ValueError(f"resource pattern '{pattern}' is not scoped")

        return patterns

    @property
    def role_name(self) -> str:
        return f"{self.prefix}-cross-env-role"

    @property
    def role_arn(self) -> str:
        return f"arn:aws:iam::{self.trusting_account}:role/{self.role_name}"

    @property
    def policy_name(self) -> str:
        return f"{self.prefix}-cross-account-deploy-policy"

    @property
    def resource_patterns(self) -> typing.List[str]:
        # the CDK bootstrap roles of the devops account
        return self.permitted_resource_patterns or [
            f"arn:aws:iam::{self.devops_account}:role/cdk-*"
        ]

    @property
    def trusted_principal_arn(self) -> str:
        return f"arn:aws:iam::{self.devops_account}:root"

    def trust_policy_document(self) -> typing.Dict[str, typing.Any]:
        return {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"AWS": self.trusted_principal_arn},
                    "Action": "sts:AssumeRole",
                }
            ],
        }

    def permission_policy_document(self) -> typing.Dict[str, typing.Any]:
        return {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Action": "sts:AssumeRole",
                    "Resource": self.resource_patterns,
                }
            ],
        }

    def authorize_assume_role(self, principal_arn: str) -> Decision:
        """Evaluates the trust policy for an AssumeRole call made by `principal_arn`."""
        principal_account = _account_of(principal_arn)

        if principal_account is None:
            logger.warning(
                "denying malformed principal", extra={"principal_arn": principal_arn}
            )

            return Decision.DENY

        for statement in self.trust_policy_document()["Statement"]:
            if statement["Effect"] != "Allow" or statement["Action"] != "sts:AssumeRole":
                continue

            if _account_of(statement["Principal"]["AWS"]) == principal_account:
                return Decision.ALLOW

        logger.warning(
            "principal is not trusted by cross account role",
            extra={"principal_arn": principal_arn, "role_arn": self.role_arn},
        )

        return Decision.DENY


def _account_of(arn: str) -> typing.Optional[str]:
    parts = arn.split(":", 5)

    if len(parts) != 6 or parts[0] != "arn" or parts[2] not in ("iam", "sts"):
        return None

    if not re.match(AWS_ACCOUNT_ID_PATTERN, parts[4]):
        return None

    return parts[4]


class TemporaryCredentials(pydantic.BaseModel):
    access_key_id: str = pydantic.Field(alias="AccessKeyId")
    secret_access_key: str = pydantic.Field(alias="SecretAccessKey", repr=False)
    session_token: str = pydantic.Field(alias="SessionToken", repr=False)
    expiration: datetime = pydantic.Field(alias="Expiration")


@dataclasses.dataclass
class RoleAssumptionError(Exception):
    role_arn: str
    reason: str

    def __str__(self) -> str:
        return f"assuming cross account role failed [role_arn: {self.role_arn}, reason: {self.reason}]"


@dataclasses.dataclass
class ProfileInstallError(Exception):
    profile_name: str
    reason: str

    def __str__(self) -> str:
        return f"installing credential profile failed [profile_name: {self.profile_name}, reason: {self.reason}]"


class CredentialBroker:
    def __init__(self, sts_client, duration_seconds: int = 3600):
        self.sts_client = sts_client
        self.duration_seconds = duration_seconds

    def caller_arn(self) -> str:
        try:
            return self.sts_client.get_caller_identity()["Arn"]
        except (
            botocore.exceptions.BotoCoreError,
            botocore.exceptions.ClientError,
        ) as e:
            logger.exception("resolving caller identity failed")

            raise RoleAssumptionError(role_arn="", reason=str(e)) from e

    def obtain(
        self, grant: CrossAccountGrant, session_name: str
    ) -> TemporaryCredentials:
        logger.info(
            "assuming cross account role",
            extra={"role_arn": grant.role_arn, "session_name": session_name},
        )

        try:
            response = self.sts_client.assume_role(
                RoleArn=grant.role_arn,
                RoleSessionName=session_name,
                DurationSeconds=self.duration_seconds,
            )
        except (
            botocore.exceptions.BotoCoreError,
            botocore.exceptions.ClientError,
        ) as e:
            logger.exception(
                "assuming cross account role failed",
                extra={"role_arn": grant.role_arn},
            )

            raise RoleAssumptionError(role_arn=grant.role_arn, reason=str(e)) from e

        credentials = TemporaryCredentials.model_validate(response["Credentials"])

        logger.info(
            "assumed cross account role",
            extra={
                "role_arn": grant.role_arn,
                "access_key_id": credentials.access_key_id,
                "expiration": credentials.expiration,
            },
        )

        return credentials


def install_profile(credentials: TemporaryCredentials, profile_name: str) -> None:
    """Writes session credentials into a named AWS CLI profile, never the default one."""
    if profile_name == "default":
        raise ProfileInstallError(
            profile_name=profile_name,
            reason="session credentials must not replace the default profile",
        )

    written: typing.List[str] = []

    for key, value in (
        ("aws_access_key_id", credentials.access_key_id),
        ("aws_secret_access_key", credentials.secret_access_key),
        ("aws_session_token", credentials.session_token),
    ):
        try:
            subprocess.run(
                ["aws", "configure", "set", key, value, "--profile", profile_name],
                check=True,
                capture_output=True,
            )
        except subprocess.CalledProcessError as e:
            # the command line holds the secret, so only the exit status is reported
            reason = f"aws configure set {key} exited with status {e.returncode}"

            logger.error(
                "setting credential profile field failed",
                extra={"profile_name": profile_name, "key": key, "reason": reason},
            )

            _clear_profile_fields(written, profile_name)

            raise ProfileInstallError(profile_name=profile_name, reason=reason) from None
        except OSError as e:
            logger.error(
                "running aws cli failed",
                extra={"profile_name": profile_name, "reason": str(e)},
            )

            _clear_profile_fields(written, profile_name)

            raise ProfileInstallError(profile_name=profile_name, reason=str(e)) from e

        written.append(key)

    logger.info("installed credential profile", extra={"profile_name": profile_name})


def _clear_profile_fields(keys: typing.Sequence[str], profile_name: str) -> None:
    """Blanks fields already written so a failed install leaves no mismatched key set."""
    for key in keys:
        completed = subprocess.run(
            ["aws", "configure", "set", key, "", "--profile", profile_name],
            check=False,
            capture_output=True,
        )

        if completed.returncode != 0:
            logger.warning(
                "clearing credential profile field failed",
                extra={
                    "profile_name": profile_name,
                    "key": key,
                    "returncode": completed.returncode,
                },
            )
