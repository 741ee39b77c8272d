import os

import pytest
from rollout.repositories import TemplateRepository

ASSETS_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "assets")


def test_load_template():
    template = TemplateRepository(os.path.join(ASSETS_DIR, "deployment.yaml")).load()
    assert template["name"] == "gkeapp"
    assert template["image"] == {"repository": "gcr.io/my-project/gkeapp", "tag": "latest"}
    assert template["port"] == 8080
    assert type(template["image"]) is dict

def test_load_missing_template():
    assert TemplateRepository("notexistingfile").load() == {}

def test_load_non_mapping_template(tmp_path):
    bad_file = tmp_path / "deployment.yaml"
    bad_file.write_text("- name: gkeapp\n")
    with pytest.raises(ValueError, match="Invalid deployment.yaml"):
        TemplateRepository(str(bad_file)).load()
