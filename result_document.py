"""
In-memory model of the shared results document.

The document is a tree: a root holding test cases, each test case holding
individual tests. Nodes are looked up by name and created on first use, and
their attributes are only ever overwritten, never removed. The module also
provides the canonical JSON form of the tree and validates parsed content
against a JSON schema before trusting it.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from jsonschema import validate, ValidationError as SchemaValidationError

from harness_errors import CorruptDocumentError


DOCUMENT_VERSION = "1.0"

# Attribute order in the persisted form
NODE_ATTRIBUTES = ("name", "status", "result", "start", "end")
TEST_ATTRIBUTES = NODE_ATTRIBUTES + ("message",)

_NODE_PROPERTIES = {
    "name": {"type": "string", "minLength": 1},
    "status": {"type": "string"},
    "result": {"type": "string"},
    "start": {"type": "string"},
    "end": {"type": "string"},
}

RESULTS_DOCUMENT_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["version", "testcases"],
    "properties": {
        "version": {"type": "string"},
        "testcases": {
            "type": "array",
            "items": {
                "type": "object",
                # A test case created by publishing one of its tests has no status yet
                "required": ["name"],
                "properties": dict(
                    _NODE_PROPERTIES,
                    tests={
                        "type": "array",
                        "items": {
                            "type": "object",
                            "required": ["name", "status"],
                            "properties": dict(_NODE_PROPERTIES, message={"type": "string"}),
                            "additionalProperties": False,
                        },
                    },
                ),
                "additionalProperties": False,
            },
        },
    },
    "additionalProperties": False,
}


@dataclass
class TestNode:
    """Status of a single test within a test case."""
    name: str
    status: Optional[str] = None
    result: Optional[str] = None
    start: Optional[str] = None  # ISO format datetime string
    end: Optional[str] = None  # ISO format datetime string
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _attributes_to_dict(self, TEST_ATTRIBUTES)


@dataclass
class TestCaseNode:
    """Status of a test case and the tests it owns."""
    name: str
    status: Optional[str] = None
    result: Optional[str] = None
    start: Optional[str] = None  # ISO format datetime string
    end: Optional[str] = None  # ISO format datetime string
    tests: List[TestNode] = field(default_factory=list)

    def find_test(self, test_name: str) -> Optional[TestNode]:
        for test in self.tests:
            if test.name == test_name:
                return test
        return None

    def get_test(self, test_name: str) -> TestNode:
        """
        Get the test of the given name, creating it if it does not exist yet.

        Test names are unique within their test case only; a test of the same
        name under another test case is a different node.
        """
        test = self.find_test(test_name)
        if test is None:
            test = TestNode(name=test_name)
            self.tests.append(test)
        return test

    def to_dict(self) -> Dict[str, Any]:
        data = _attributes_to_dict(self, NODE_ATTRIBUTES)
        if self.tests:
            data["tests"] = [test.to_dict() for test in self.tests]
        return data


@dataclass
class ResultDocument:
    """Root of the results tree, test cases kept in insertion order."""
    testcases: List[TestCaseNode] = field(default_factory=list)

    def find_test_case(self, test_case_name: str) -> Optional[TestCaseNode]:
        for test_case in self.testcases:
            if test_case.name == test_case_name:
                return test_case
        return None

    def get_test_case(self, test_case_name: str) -> TestCaseNode:
        """Get the test case of the given name, creating it if it does not exist yet."""
        test_case = self.find_test_case(test_case_name)
        if test_case is None:
            test_case = TestCaseNode(name=test_case_name)
            self.testcases.append(test_case)
        return test_case

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": DOCUMENT_VERSION,
            "testcases": [test_case.to_dict() for test_case in self.testcases],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResultDocument":
        """
        Build a document from its dictionary form.

        Raises:
            CorruptDocumentError: If the data does not match the document schema
        """
        try:
            validate(instance=data, schema=RESULTS_DOCUMENT_SCHEMA)
        except SchemaValidationError as e:
            raise CorruptDocumentError(f"Results document is malformed: {e.message}") from e

        document = cls()
        for case_data in data["testcases"]:
            if document.find_test_case(case_data["name"]) is not None:
                raise CorruptDocumentError(
                    f'Results document contains test case "{case_data["name"]}" more than once'
                )
            test_case = TestCaseNode(
                **{key: case_data[key] for key in NODE_ATTRIBUTES if key in case_data}
            )
            for test_data in case_data.get("tests", []):
                if test_case.find_test(test_data["name"]) is not None:
                    raise CorruptDocumentError(
                        f'Test case "{test_case.name}" contains test "{test_data["name"]}" more than once'
                    )
                test_case.tests.append(TestNode(
                    **{key: test_data[key] for key in TEST_ATTRIBUTES if key in test_data}
                ))
            document.testcases.append(test_case)
        return document


def _attributes_to_dict(node: Any, attributes) -> Dict[str, Any]:
    data = {}
    for attribute in attributes:
        value = getattr(node, attribute)
        if value is not None:
            data[attribute] = value
    return data


def dump_document(document: ResultDocument) -> str:
    """Serialize a document to its canonical pretty-printed text."""
    return json.dumps(document.to_dict(), indent=2, ensure_ascii=False) + "\n"


def parse_document(text: str) -> ResultDocument:
    """
    Parse document text. Blank text is a new, empty document.

    Raises:
        CorruptDocumentError: If the text is not a valid results document
    """
    if not text.strip():
        return ResultDocument()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise CorruptDocumentError(f"Results document is not valid JSON: {str(e)}") from e
    return ResultDocument.from_dict(data)
