import typing

import aws_cdk
import cdk_nag
import constructs
from aws_cdk import (
    aws_codebuild,
    aws_codecommit,
    aws_codepipeline,
    aws_codepipeline_actions,
    aws_iam,
    aws_s3,
)

from cdk.deployment_config import DeploymentConfig
from pipeline_monitor.credentials import CrossAccountGrant


class PipelineStack(aws_cdk.Stack):
    """
    Deployed in the devops account.

    source -> lint -> build -> security scan -> manual approval -> deploy. The deploy stage
    assumes the target account's cross-env role through `pipeline-deploy`.
    """

    def __init__(
        self,
        scope: constructs.Construct,
        id: str,
        *,
        deployment_config: DeploymentConfig,
        grant: CrossAccountGrant,
        **kwargs,
    ):
        super().__init__(scope=scope, id=id, **kwargs)

        prefix = deployment_config.prefix

        self._create_repository_and_bucket(prefix=prefix)
        self._create_projects(deployment_config=deployment_config, grant=grant)
        self._create_pipeline(prefix=prefix)

        aws_cdk.Aspects.of(self).add(cdk_nag.AwsSolutionsChecks(verbose=True))

        aws_cdk.Tags.of(self).add("ApplicationName", "Pipeline Monitor")
        aws_cdk.Tags.of(self).add("Environment", deployment_config.env_name)

    def _create_repository_and_bucket(self, prefix: str) -> None:
        self.source_repository = aws_codecommit.Repository(
            scope=self,
            id="AppRepository",
            repository_name=f"{prefix}-app-repo",
        )

        self.artifacts_bucket = aws_s3.Bucket(
            scope=self,
            id="ArtifactsBucket",
            bucket_name=f"{prefix}-app-pipeline-artifacts",
            access_control=aws_s3.BucketAccessControl.PRIVATE,
            auto_delete_objects=True,
            block_public_access=aws_s3.BlockPublicAccess.BLOCK_ALL,
            encryption=aws_s3.BucketEncryption.S3_MANAGED,
            enforce_ssl=True,
            removal_policy=aws_cdk.RemovalPolicy.DESTROY,
        )

        cdk_nag.NagSuppressions.add_resource_suppressions(
            construct=self.artifacts_bucket,
            suppressions=[
                cdk_nag.NagPackSuppression(
                    id="AwsSolutions-S1",
                    reason="Pipeline artifacts are transient.",
                )
            ],
        )

    def _project(
        self,
        id: str,
        project_name: str,
        build_spec: typing.Mapping[str, typing.Any],
    ) -> aws_codebuild.PipelineProject:
        return aws_codebuild.PipelineProject(
            scope=self,
            id=id,
            project_name=project_name,
            build_spec=aws_codebuild.BuildSpec.from_object(dict(build_spec)),
            environment=aws_codebuild.BuildEnvironment(
                build_image=aws_codebuild.LinuxBuildImage.STANDARD_7_0
            ),
            timeout=aws_cdk.Duration.minutes(100),
        )

    def _create_projects(
        self, deployment_config: DeploymentConfig, grant: CrossAccountGrant
    ) -> None:
        prefix = deployment_config.prefix

        python_install = {
            "runtime-versions": {"python": "3.12", "nodejs": "18"},
            "commands": ["npm install -g aws-cdk", "pip install .[cdk,test]"],
        }

        self.linting_project = self._project(
            id="LintingProject",
            project_name=f"{prefix}-linting-codebuild",
            build_spec={
                "version": "0.2",
                "phases": {
                    "install": python_install,
                    "build": {
                        "commands": [
                            "python -m compileall -q pipeline_monitor cdk",
                            "python -m pytest",
                        ]
                    },
                },
            },
        )

        self.build_project = self._project(
            id="BuildProject",
            project_name=f"{prefix}-build-codebuild",
            build_spec={
                "version": "0.2",
                "phases": {
                    "install": python_install,
                    "build": {
                        "commands": [
                            f"cdk synth -c config={deployment_config.env_name}"
                        ]
                    },
                },
                "artifacts": {
                    "base-directory": ".",
                    "files": ["**/*"],
                    "exclude-paths": [".venv/**"],
                },
            },
        )

        self.cfn_nag_project = self._project(
            id="CfnNagProject",
            project_name=f"{prefix}-cfn-nag-codebuild",
            build_spec={
                "version": "0.2",
                "phases": {
                    "install": {
                        "runtime-versions": {"ruby": "3.2"},
                        "commands": ["gem install cfn-nag"],
                    },
                    "build": {
                        "commands": [
                            'find ./cdk.out -type f -name "*.template.json" | xargs -I {} cfn_nag_scan --input-path {}'
                        ]
                    },
                },
            },
        )

        self.git_secrets_project = self._project(
            id="GitSecretsProject",
            project_name=f"{prefix}-git-secrets-codebuild",
            build_spec={
                "version": "0.2",
                "phases": {
                    "install": {
                        "commands": [
                            "git clone https://github.com/awslabs/git-secrets.git /tmp/git-secrets",
                            "make -C /tmp/git-secrets install",
                        ]
                    },
                    "build": {
                        "commands": [
                            "git rev-parse --git-dir > /dev/null 2>&1 || (git init --quiet && git add -A .)",
                            "git secrets --register-aws --global",
                            "git secrets --add --allowed 'config/*'",
                            "git secrets --scan",
                        ]
                    },
                },
            },
        )

        self.deploy_project = self._project(
            id="DeployProject",
            project_name=f"{prefix}-deploy-codebuild",
            build_spec={
                "version": "0.2",
                "env": {
                    "variables": {
                        "PIPELINE_PREFIX": prefix,
                        "DEVOPS_ACCOUNT_ID": grant.devops_account,
                        "TARGET_ACCOUNT_ID": grant.trusting_account,
                    }
                },
                "phases": {
                    "install": python_install,
                    "build": {
                        "commands": [
                            f"pipeline-deploy -- cdk deploy --all -c config={deployment_config.env_name} --method=direct --require-approval never"
                        ]
                    },
                },
            },
        )

        self.deploy_project.add_to_role_policy(
            aws_iam.PolicyStatement(
                actions=["sts:AssumeRole"],
                effect=aws_iam.Effect.ALLOW,
                resources=[grant.role_arn],
            )
        )

        for project in (
            self.linting_project,
            self.build_project,
            self.cfn_nag_project,
            self.git_secrets_project,
            self.deploy_project,
        ):
            cdk_nag.NagSuppressions.add_resource_suppressions(
                construct=project,
                apply_to_children=True,
                suppressions=[
                    cdk_nag.NagPackSuppression(
                        id="AwsSolutions-CB4",
                        reason="Build artifacts are encrypted by the artifacts bucket.",
                    ),
                    cdk_nag.NagPackSuppression(
                        id="AwsSolutions-IAM5",
                        reason="CodeBuild default policy uses log stream and report wildcards.",
                    ),
                ],
            )

    def _create_pipeline(self, prefix: str) -> None:
        source_artifact = aws_codepipeline.Artifact(f"{prefix}-source-input-artifact")
        build_artifact = aws_codepipeline.Artifact(f"{prefix}-build-artifact")

        self.pipeline = aws_codepipeline.Pipeline(
            scope=self,
            id="AppPipeline",
            pipeline_name=f"{prefix}-app-pipeline",
            pipeline_type=aws_codepipeline.PipelineType.V1,
            artifact_bucket=self.artifacts_bucket,
            stages=[
                aws_codepipeline.StageProps(
                    stage_name=f"{prefix}-source-stage",
                    actions=[
                        aws_codepipeline_actions.CodeCommitSourceAction(
                            action_name=f"{prefix}-source",
                            repository=self.source_repository,
                            output=source_artifact,
                        )
                    ],
                ),
                aws_codepipeline.StageProps(
                    stage_name=f"{prefix}-linting-stage",
                    actions=[
                        aws_codepipeline_actions.CodeBuildAction(
                            action_name=f"{prefix}-linting-action",
                            project=self.linting_project,
                            input=source_artifact,
                        )
                    ],
                ),
                aws_codepipeline.StageProps(
                    stage_name=f"{prefix}-build-stage",
                    actions=[
                        aws_codepipeline_actions.CodeBuildAction(
                            action_name=f"{prefix}-build-action",
                            project=self.build_project,
                            input=source_artifact,
                            outputs=[build_artifact],
                        )
                    ],
                ),
                aws_codepipeline.StageProps(
                    stage_name=f"{prefix}-security-stage",
                    actions=[
                        aws_codepipeline_actions.CodeBuildAction(
                            action_name=f"{prefix}-cfn-nag-action",
                            project=self.cfn_nag_project,
                            input=build_artifact,
                        ),
                        aws_codepipeline_actions.CodeBuildAction(
                            action_name=f"{prefix}-git-secrets-action",
                            project=self.git_secrets_project,
                            input=source_artifact,
                        ),
                    ],
                ),
                aws_codepipeline.StageProps(
                    stage_name=f"{prefix}-manual-stage",
                    actions=[
                        aws_codepipeline_actions.ManualApprovalAction(
                            action_name=f"{prefix}-approval-action",
                            additional_information="Approve after reviewing the security findings of the previous stage.",
                        )
                    ],
                ),
                aws_codepipeline.StageProps(
                    stage_name=f"{prefix}-deploy-stage",
                    actions=[
                        aws_codepipeline_actions.CodeBuildAction(
                            action_name=f"{prefix}-deploy-action",
                            project=self.deploy_project,
                            input=source_artifact,
                        )
                    ],
                ),
            ],
        )
