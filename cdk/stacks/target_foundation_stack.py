import aws_cdk
import cdk_nag
import constructs
from aws_cdk import aws_iam

from pipeline_monitor.credentials import CrossAccountGrant


class TargetFoundationStack(aws_cdk.Stack):
    """
    Deployed in the target account.

    Creates the role the devops account's deploy stage assumes. Only the devops account is
    trusted, and the attached policy only reaches the resources named by the grant.
    """

    def __init__(
        self,
        scope: constructs.Construct,
        id: str,
        *,
        grant: CrossAccountGrant,
        **kwargs,
    ):
        super().__init__(scope=scope, id=id, **kwargs)

        self.cross_account_role = aws_iam.Role(
            scope=self,
            id="CrossEnvRole",
            assumed_by=aws_iam.AccountPrincipal(grant.devops_account),
            description="Assumed by the devops account pipeline to deploy into this account.",
            role_name=grant.role_name,
        )

        self.deploy_policy = aws_iam.Policy(
            scope=self,
            id="CrossAccountDeployPolicy",
            policy_name=grant.policy_name,
            statements=[
                aws_iam.PolicyStatement(
                    actions=["sts:AssumeRole"],
                    effect=aws_iam.Effect.ALLOW,
                    resources=grant.resource_patterns,
                )
            ],
        )

        self.cross_account_role.attach_inline_policy(self.deploy_policy)

        cdk_nag.NagSuppressions.add_resource_suppressions(
            construct=self.deploy_policy,
            suppressions=[
                cdk_nag.NagPackSuppression(
                    id="AwsSolutions-IAM5",
                    reason="Scoped to the CDK bootstrap role name prefix.",
                )
            ],
        )

        aws_cdk.Aspects.of(self).add(cdk_nag.AwsSolutionsChecks(verbose=True))

        aws_cdk.Tags.of(self).add("ApplicationName", "Pipeline Monitor")
