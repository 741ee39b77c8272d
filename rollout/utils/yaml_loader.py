from ruamel.yaml import YAML

def get_yaml_instance(explicit_start: bool = False) -> YAML:
    """Round-trip YAML shared by every file the orchestrator reads or writes.

    ``explicit_start`` prefixes each document with ``---``, which is how
    multi-document manifest streams are printed for ``kubectl apply -f -``.
    """
    yaml = YAML(typ="rt")
    yaml.default_flow_style = False
    yaml.explicit_start = explicit_start
    yaml.preserve_quotes = True
    yaml.width = 4096
    yaml.indent(mapping=2, sequence=2, offset=0)
    return yaml
