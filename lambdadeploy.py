import json
import os
import shlex
import sys
import pulumi
import pulumi_aws as aws
import pulumi_command as command
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from bundle import build_bundle, compute_source_hash
from config import Config, LambdaFunctionConfig
from exceptions import ConfigurationError

BUNDLE_SCRIPT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "bundle.py")

AWS_REGION_ABBREVIATIONS = {
    "us-east-1": "use1",
    "us-east-2": "use2",
    "us-west-1": "usw1",
    "us-west-2": "usw2",
    "af-south-1": "afs1",
    "ap-east-1": "ape1",
    "ap-south-1": "aps1",
    "ap-northeast-1": "apne1",
    "ap-northeast-2": "apne2",
    "ap-northeast-3": "apne3",
    "ap-southeast-1": "apse1",
    "ap-southeast-2": "apse2",
    "ca-central-1": "cac1",
    "eu-central-1": "euc1",
    "eu-west-1": "euw1",
    "eu-west-2": "euw2",
    "eu-west-3": "euw3",
    "eu-north-1": "eun1",
    "eu-south-1": "eus1",
    "me-south-1": "mes1",
    "sa-east-1": "sae1",
    "us-gov-east-1": "usge1",
    "us-gov-west-1": "usgw1",
    "cn-north-1": "cnn1",
    "cn-northwest-1": "cnnw1",
}

LAMBDA_ASSUME_ROLE_POLICY = json.dumps({
    "Version": "2012-10-17",
    "Statement": [{
        "Effect": "Allow",
        "Principal": {"Service": "lambda.amazonaws.com"},
        "Action": "sts:AssumeRole",
    }],
})


@dataclass
class DeployedFunction:
    function: aws.lambda_.Function
    install: command.local.Command
    role_arn: pulumi.Input[str]
    source_hash: str
    staging_dir: str
    policies: List[pulumi.Resource] = field(default_factory=list)
    log_group: Optional[aws.cloudwatch.LogGroup] = None



def resolve_value(value: Any, resources: Dict[str, Any]) -> Any:
    if isinstance(value, dict):
        return {k: resolve_value(v, resources) for k, v in value.items()}
    elif isinstance(value, list):
        return [resolve_value(item, resources) for item in value]
    elif isinstance(value, str):
        if value.startswith("secret:"):
            # Fetch secret from Pulumi config
            secret_key = value[len("secret:"):]
            config = pulumi.Config()
            return config.require_secret(secret_key)
        elif value.startswith("ref:"):
            ref_text = value[4:]
            if "." in ref_text:
                ref_res, ref_attr = ref_text.split(".", 1)
            else:
                ref_res, ref_attr = ref_text, "arn"
            if ref_res not in resources:
                raise ConfigurationError(f"Referenced function '{ref_res}' not found.")
            attr_val = getattr(resources[ref_res], ref_attr, None)
            if attr_val is None:
                raise ConfigurationError(f"Attribute '{ref_attr}' not found on function '{ref_res}'")
            return attr_val
        else:
            return value
    else:
        return value


def to_env_value(value: Any) -> Any:
    # Lambda environment variables are strings
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


def archive_from_output(stdout: Optional[str], default_dir: str) -> pulumi.FileArchive:
    """Pick the staging directory out of the JSON printed by `bundle.py build`."""
    path = default_dir
    if stdout:
        last_line = stdout.strip().splitlines()[-1]
        try:
            path = json.loads(last_line)["staging_dir"]
        except (ValueError, KeyError):
            pulumi.log.warn(f"Could not parse bundle output, falling back to {default_dir}")
    return pulumi.FileArchive(path)


class LambdaDeploymentBuilder:
    def __init__(self, config: Config, project_dir: Optional[str] = None):
        self.config = config
        self.project_dir = project_dir or os.getcwd()
        self.resources: Dict[str, DeployedFunction] = {}
        self.functions: Dict[str, aws.lambda_.Function] = {}
        self.provider: Optional[aws.Provider] = None

    def get_abbreviation(self, region: str) -> str:
        return AWS_REGION_ABBREVIATIONS.get(region.lower(), region.split("-")[0].lower())

    def generate_resource_name(self, base_name: str) -> str:
        team = self.config.team.strip().lower()
        service = self.config.service.strip().lower()
        env = self.config.environment.strip().lower()
        reg_abbr = self.get_abbreviation(self.config.region)
        return f"{team}-{service}-{env}-{reg_abbr}-{base_name}".lower()

    def resolve_args(self, args: dict) -> dict:
        return {key: resolve_value(value, self.functions) for key, value in args.items()}

    def environment_variables(self, environment: dict) -> dict:
        return {key: to_env_value(value) for key, value in self.resolve_args(environment).items()}

    def _path(self, path: str) -> str:
        if os.path.isabs(path):
            return path
        return os.path.normpath(os.path.join(self.project_dir, path))

    def _tags(self, lambda_config: LambdaFunctionConfig) -> Dict[str, str]:
        tags = dict(self.config.tags or {})
        tags.update(lambda_config.tags or {})
        return tags

    def _opts(self, depends_on: Optional[List[pulumi.Resource]] = None) -> pulumi.ResourceOptions:
        return pulumi.ResourceOptions(provider=self.provider, depends_on=depends_on or [])

    def staging_dir(self, lambda_config: LambdaFunctionConfig) -> str:
        return os.path.join(self._path(self.config.build_dir), lambda_config.name)

    def bundle_command(self, lambda_config: LambdaFunctionConfig, staging_dir: str) -> str:
        parts = [
            sys.executable, BUNDLE_SCRIPT, "build",
            "--source-dir", self._path(lambda_config.source_dir),
            "--staging-dir", staging_dir,
            "--requirements", lambda_config.requirements,
        ]
        for pattern in lambda_config.exclude:
            parts.append(f"--exclude={pattern}")
        for arg in lambda_config.pip_args:
            parts.append(f"--pip-arg={arg}")
        return " ".join(shlex.quote(part) for part in parts)

    def _build_install(self, lambda_config: LambdaFunctionConfig, source_hash: str, staging_dir: str):
        name = lambda_config.name
        if not os.path.isdir(staging_dir):
            # State may already hold this hash, in which case the command below won't re-run
            pulumi.log.info(f"Staging directory {staging_dir} for '{name}' missing, building it now")
            build_bundle(
                self._path(lambda_config.source_dir),
                staging_dir,
                requirements=lambda_config.requirements,
                exclude=lambda_config.exclude,
                pip_args=lambda_config.pip_args,
            )
        build_cmd = self.bundle_command(lambda_config, staging_dir)
        pulumi.log.info(f"Bundle for '{name}' hashed to {source_hash}; dependencies reinstall only on change")
        return command.local.Command(
            self.generate_resource_name(f"{name}-install"),
            create=build_cmd,
            update=build_cmd,
            dir=self.project_dir,
            triggers=[source_hash],
        )

    def _build_role(self, lambda_config: LambdaFunctionConfig) -> Tuple[pulumi.Input[str], List[pulumi.Resource]]:
        name = lambda_config.name
        if lambda_config.role_arn:
            pulumi.log.info(f"Using existing role {lambda_config.role_arn} for '{name}'")
            return lambda_config.role_arn, []

        role = aws.iam.Role(
            self.generate_resource_name(f"{name}-role"),
            assume_role_policy=LAMBDA_ASSUME_ROLE_POLICY,
            tags=self._tags(lambda_config),
            opts=self._opts(),
        )
        policies: List[pulumi.Resource] = []
        for index, policy_arn in enumerate(lambda_config.policy_arns):
            policies.append(aws.iam.RolePolicyAttachment(
                self.generate_resource_name(f"{name}-policy-{index}"),
                role=role.name,
                policy_arn=policy_arn,
                opts=self._opts(),
            ))
        if lambda_config.inline_policy:
            policy = resolve_value(lambda_config.inline_policy, self.functions)
            policies.append(aws.iam.RolePolicy(
                self.generate_resource_name(f"{name}-inline-policy"),
                role=role.id,
                policy=pulumi.Output.json_dumps(policy),
                opts=self._opts(),
            ))
        return role.arn, policies

    def build_function(self, lambda_config: LambdaFunctionConfig) -> DeployedFunction:
        name = lambda_config.name
        source_hash = compute_source_hash(self._path(lambda_config.source_dir))
        staging_dir = self.staging_dir(lambda_config)

        install = self._build_install(lambda_config, source_hash, staging_dir)
        role_arn, policies = self._build_role(lambda_config)

        function_name = lambda_config.custom_name or self.generate_resource_name(name)
        depends_on: List[pulumi.Resource] = [install, *policies]

        log_group = None
        if lambda_config.log_retention_days:
            log_group = aws.cloudwatch.LogGroup(
                self.generate_resource_name(f"{name}-logs"),
                name=f"/aws/lambda/{function_name}",
                retention_in_days=int(lambda_config.log_retention_days),
                tags=self._tags(lambda_config),
                opts=self._opts(),
            )
            depends_on.append(log_group)

        args: Dict[str, Any] = {
            "name": function_name,
            "role": role_arn,
            "runtime": lambda_config.runtime,
            "handler": lambda_config.handler,
            # Archived by the engine on every run, after the install command settles
            "code": install.stdout.apply(lambda out: archive_from_output(out, staging_dir)),
            "source_code_hash": source_hash,
            "timeout": int(lambda_config.timeout),
            "memory_size": int(lambda_config.memory_size),
            "architectures": lambda_config.architectures,
            "tags": self._tags(lambda_config),
        }
        if lambda_config.description:
            args["description"] = lambda_config.description
        if lambda_config.environment:
            args["environment"] = aws.lambda_.FunctionEnvironmentArgs(
                variables=self.environment_variables(lambda_config.environment),
            )

        pulumi.log.info(f"DEBUG for '{name}': function args => {sorted(args)}")
        function = aws.lambda_.Function(
            self.generate_resource_name(f"{name}-function"),
            opts=self._opts(depends_on),
            **args,
        )
        pulumi.log.info(f"Created function: {function_name} from {lambda_config.source_dir}")

        return DeployedFunction(
            function=function,
            install=install,
            role_arn=role_arn,
            source_hash=source_hash,
            staging_dir=staging_dir,
            policies=policies,
            log_group=log_group,
        )

    def build(self):
        self.provider = aws.Provider(
            self.generate_resource_name("aws"),
            region=self.config.region,
        )
        for lambda_config in self.config.lambdas:
            deployed = self.build_function(lambda_config)
            self.resources[lambda_config.name] = deployed
            self.functions[lambda_config.name] = deployed.function

    def exports(self) -> Dict[str, Any]:
        outputs: Dict[str, Any] = {}
        for name, deployed in self.resources.items():
            outputs[f"{name}_function_name"] = deployed.function.name
            outputs[f"{name}_arn"] = deployed.function.arn
            outputs[f"{name}_role_arn"] = deployed.role_arn
            outputs[f"{name}_source_hash"] = deployed.source_hash
        return outputs
