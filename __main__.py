import pulumi
from config import load_config
from lambdadeploy import LambdaDeploymentBuilder


def main():
    # Load YAML configuration
    config_file = pulumi.Config().get("configFile") or "config.yaml"
    config = load_config(config_file)

    try:
        builder = LambdaDeploymentBuilder(config)
    except Exception as e:
        pulumi.log.error(f"Failed to initialize LambdaDeploymentBuilder: {e}")
        raise

    try:
        builder.build()
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    # Export function names, ARNs and source hashes
    for name, value in builder.exports().items():
        pulumi.export(name, value)


if __name__ == "__main__":
    main()
