from typing import Any

from pydantic import ValidationError as PydanticValidationError

from rollout.errors import ValidationError
from rollout.models import DeploymentSpec, Exposure

MANAGED_BY = "rollout-orchestrator"
SPEC_VERSION_ANNOTATION = "rollout.orchestrator/spec-version"

KNOWN_KEYS = frozenset({
    "name",
    "namespace",
    "replicas",
    "image.repository",
    "image.tag",
    "image.digest",
    "port",
    "exposure",
})
LABEL_PREFIX = "labels."


def flatten(values: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested mappings into dotted keys, the way ``helm --set`` names them."""
    flat: dict[str, Any] = {}
    for key, value in values.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict):
            if not value and path == "labels":
                continue
            flat.update(flatten(value, f"{path}."))
        else:
            flat[path] = value
    return flat


class SpecResolver:
    """Merges a deployment template with override values into a DeploymentSpec.

    Both inputs are left untouched; resolving the same pair twice yields equal
    specs.
    """

    def resolve(
        self, template: dict[str, Any], overrides: dict[str, Any] | None = None, version: int = 1
    ) -> DeploymentSpec:
        values = flatten(template)
        self._check_keys(values, "template")
        flat_overrides = flatten(overrides or {})
        self._check_keys(flat_overrides, "override")
        values.update(flat_overrides)

        repository = values.get("image.repository")
        if not repository:
            raise ValidationError("Missing required field: image.repository")
        digest = values.get("image.digest")
        tag = values.get("image.tag")
        if digest:
            image = f"{repository}@{digest}"
        elif tag:
            image = f"{repository}:{tag}"
        else:
            raise ValidationError("Missing required field: image.tag or image.digest")
        if values.get("port") is None:
            raise ValidationError("Missing required field: port")
        if values.get("name") is None:
            raise ValidationError("Missing required field: name")

        labels = {
            key.removeprefix(LABEL_PREFIX): str(value)
            for key, value in sorted(values.items())
            if key.startswith(LABEL_PREFIX)
        }
        fields = {
            "name": values["name"],
            "image": image,
            "port": values["port"],
            "version": version,
            "labels": labels,
        }
        for optional in ("namespace", "replicas", "exposure"):
            if values.get(optional) is not None:
                fields[optional] = values[optional]

        try:
            return DeploymentSpec(**fields)
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ValidationError(f"Invalid deployment spec: {problems}") from e

    def _check_keys(self, values: dict[str, Any], source: str) -> None:
        unknown = sorted(
            key for key in values
            if key not in KNOWN_KEYS and not (key.startswith(LABEL_PREFIX) and len(key) > len(LABEL_PREFIX))
        )
        if unknown:
            raise ValidationError(f"Unrecognized {source} key(s): {', '.join(unknown)}")

    def render(self, spec: DeploymentSpec) -> list[dict[str, Any]]:
        """Render the Deployment and Service manifests for a resolved spec."""
        def selector() -> dict[str, str]:
            return {"app": spec.name}

        def labels() -> dict[str, str]:
            return {**spec.labels, **selector(), "app.kubernetes.io/managed-by": MANAGED_BY}

        def annotations() -> dict[str, str]:
            return {SPEC_VERSION_ANNOTATION: str(spec.version)}

        def metadata() -> dict[str, Any]:
            return {
                "name": spec.name,
                "namespace": spec.namespace,
                "labels": labels(),
                "annotations": annotations(),
            }

        # fresh dicts per use so YAML output carries no anchors
        deployment = {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": metadata(),
            "spec": {
                "replicas": spec.replicas,
                "selector": {"matchLabels": selector()},
                "template": {
                    "metadata": {
                        "labels": labels(),
                        "annotations": annotations(),
                    },
                    "spec": {
                        "containers": [
                            {
                                "name": spec.name,
                                "image": spec.image,
                                "ports": [{"containerPort": spec.port}],
                                "readinessProbe": {
                                    "tcpSocket": {"port": spec.port},
                                    "periodSeconds": 5,
                                },
                            }
                        ]
                    },
                },
            },
        }
        service = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": metadata(),
            "spec": {
                "type": "LoadBalancer" if spec.exposure == Exposure.EXTERNAL else "ClusterIP",
                "selector": selector(),
                "ports": [{"port": spec.port, "targetPort": spec.port, "protocol": "TCP"}],
            },
        }
        return [deployment, service]
