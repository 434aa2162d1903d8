"""
Pytest configuration and fixtures for Frappe docs assistant tests
"""

import pytest

from src.tests.fakes import FakeLLM, FakeVectorStore, make_hit


@pytest.fixture
def fake_llm():
    """LLM whose every reply is unparseable, forcing the fallback paths."""
    return FakeLLM()


@pytest.fixture
def frappe_documents():
    """A small documentation corpus with distinct sources and doc types."""
    return [
        make_hit(
            filename="framework_user/doctype.json",
            title="DocType",
            content="A DocType describes a model and its view. Step by step: create a new DocType from the desk.",
            similarity=0.88,
            source_url="https://frappeframework.com/docs/user/en/basics/doctypes"
        ),
        make_hit(
            filename="api/document.json",
            title="Document API",
            content="frappe.get_doc returns a document object. Use `doc.save()` to persist changes.",
            similarity=0.81,
            source_url="https://frappeframework.com/docs/user/en/api/document"
        ),
        make_hit(
            filename="blog/permissions.json",
            title="Permission errors when saving",
            content="If saving fails with a PermissionError, check the role permissions for the DocType.",
            similarity=0.77,
            source_url="https://discuss.example.org/t/permission-error"
        ),
        make_hit(
            filename="guides/custom_field.json",
            title="Custom Field",
            content="Add a custom field with Customize Form. Example: add a Data field to Customer.",
            similarity=0.72
        ),
    ]


@pytest.fixture
def fake_vector_store(frappe_documents):
    return FakeVectorStore(frappe_documents)
