import pytest

from apexrag.config import Settings


@pytest.fixture
def settings():
    return Settings(
        ibm_cloud_api_key="test-key",
        watsonx_region="us-south",
        watsonx_project_id="project-123",
        watsonx_gen_model="ibm/granite-3-8b-instruct",
        chunk_size=1000,
        chunk_overlap=200,
        top_k=4,
        history_window=6,
        max_new_tokens=1024,
        strict_mode=True,
        use_search=False,
        history_dir="data/history",
        log_level="INFO",
    )
