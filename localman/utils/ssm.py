# localman/utils/ssm.py
import boto3
import os

# Default region fallback (so code doesn't raise NoRegionError)
_REGION = os.getenv("AWS_DEFAULT_REGION", os.getenv("AWS_REGION", "us-east-1"))

# Parameters live under one path so several installs can share an account
_PREFIX = os.getenv("SSM_PREFIX", "/localman/")

def _ssm_client():
    return boto3.client("ssm", region_name=_REGION)

def _param_path(name: str) -> str:
    return _PREFIX.rstrip("/") + "/" + name

def get_param(name: str, decrypt: bool = True) -> str:
    """Fetch a LocalMan setting from SSM Parameter Store (raises on AWS errors)."""
    resp = _ssm_client().get_parameter(Name=_param_path(name), WithDecryption=decrypt)
    return resp["Parameter"]["Value"]
