from pathlib import Path

from harvester_provider.models import ProviderConfig


DEFAULT_CREDENTIALS_KEY = "kubeconfig"


class CredentialsError(RuntimeError):
    pass


def resolve_credentials(
    ref_name: str, ref_namespace: str, key: str, base_dir: str
) -> bytes:
    """Read one key of a secret mounted as ``<base_dir>/<namespace>/<name>/<key>``."""
    secret_dir = Path(base_dir) / ref_namespace / ref_name
    if not secret_dir.is_dir():
        raise CredentialsError(f"credentials secret {ref_namespace}/{ref_name} not found")
    path = secret_dir / key
    if not path.is_file():
        raise CredentialsError(
            f"credentials secret {ref_namespace}/{ref_name} does not contain key {key}"
        )
    data = path.read_bytes()
    if not data.strip():
        raise CredentialsError(
            f"credentials secret {ref_namespace}/{ref_name} key {key} is empty"
        )
    return data


def resolve_provider_credentials(provider_config: ProviderConfig, base_dir: str) -> bytes:
    return resolve_credentials(
        provider_config.credentials_ref_name,
        provider_config.credentials_ref_namespace or provider_config.namespace,
        provider_config.credentials_ref_key or DEFAULT_CREDENTIALS_KEY,
        base_dir,
    )
