"""Repository/tag parsing and tag extraction from Docker tar files."""

import json
import tarfile

from ..exceptions import TarReadError, ValidationError


def extract_repo_tags_from_manifest(tar_path: str) -> list[str]:
    """Extract RepoTags from manifest.json in tar file.

    Args:
        tar_path: Path to Docker tar file

    Returns:
        List of repository tags (e.g., ["nginx:alpine", "myapp:latest"])

    Raises:
        TarReadError: If tar file cannot be read
        ValidationError: If manifest.json is invalid or missing
    """
    try:
        with tarfile.open(tar_path, "r") as tar:
            try:
                manifest_member = tar.extractfile("manifest.json")
                if manifest_member is None:
                    raise ValidationError("manifest.json not found in tar file")

                manifest_data = json.loads(manifest_member.read().decode("utf-8"))

            except KeyError as e:
                raise ValidationError("manifest.json not found in tar file") from e
            except json.JSONDecodeError as e:
                raise ValidationError(f"Invalid JSON in manifest.json: {e}") from e
            except UnicodeDecodeError as e:
                raise ValidationError(f"Cannot decode manifest.json: {e}") from e

        if not isinstance(manifest_data, list) or not manifest_data:
            raise ValidationError("manifest.json must be a non-empty array")

        first_manifest = manifest_data[0]
        if not isinstance(first_manifest, dict):
            raise ValidationError("Invalid manifest entry structure")

        repo_tags = first_manifest.get("RepoTags") or []
        if not isinstance(repo_tags, list):
            raise ValidationError("RepoTags must be a list")

        return repo_tags

    except (tarfile.TarError, OSError) as e:
        raise TarReadError(f"Cannot read tar file: {e}") from e


def parse_repository_tag(repo_tag: str) -> tuple[str, str]:
    """Split ``repository:tag`` into its components.

    Args:
        repo_tag: Repository tag string
            - e.g. "nginx:alpine", "localhost:5000/myapp:latest"

    Returns:
        tuple[str, str]: (repository, tag); the tag defaults to "latest"

    Examples:
        parse_repository_tag("nginx:alpine")
        # ("nginx", "alpine")

        parse_repository_tag("localhost:5000/myapp:latest")
        # ("localhost:5000/myapp", "latest")

        parse_repository_tag("localhost:5000/myapp")
        # ("localhost:5000/myapp", "latest")
    """
    if ":" in repo_tag:
        # Split only on the last ':' to handle registry URLs like localhost:5000/repo:tag
        repository, tag = repo_tag.rsplit(":", 1)
        if "/" in tag:
            # The colon belonged to a registry port, there is no tag
            return repo_tag, "latest"
        return repository, tag or "latest"

    return repo_tag, "latest"
