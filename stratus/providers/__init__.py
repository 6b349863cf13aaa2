"""
Implementations of the stratus backends and pipeline services.

- ``stratus.providers.aws``: CloudFormation, ECR, KMS, ECS, SNS and S3
  (requires the ``aws`` extra)
- ``stratus.providers.docker``: container builds with the docker CLI
- ``stratus.providers.git``: source checkouts with the git CLI

Import the submodule you need; nothing is imported here so that the core
package works without boto3.
"""
