"""pytest fixtures for warren tests."""

import pytest
import pytest_asyncio
import tempfile
from pathlib import Path

from warren.core.client import MockClient, SearchResponse
from warren.core.models import Edge, Node, NodeData, NodeType, Position
from warren.core.repository import CanvasRepository
from warren.core.store import Store


class FakeClock:
    """manual millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def temp_dir():
    """temporary directory that cleans up after test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def store():
    """open in-memory store."""
    s = Store(":memory:")
    await s.open_or_create()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def repo(store, clock):
    """repository over the in-memory store with a fake clock."""
    return CanvasRepository(store, clock=clock)


@pytest.fixture
def sample_nodes():
    """answer node with two follow-up questions."""
    main = Node.create_main("what is a warren?", "a network of burrows.")
    return [
        main,
        Node.create_follow_up(main.id, "who digs them?", 0),
        Node.create_follow_up(main.id, "how deep do they go?", 1),
    ]


@pytest.fixture
def sample_edges(sample_nodes):
    main = sample_nodes[0]
    return [Edge.connect(main.id, n.id) for n in sample_nodes[1:]]


@pytest.fixture
def scenario_graph():
    """main answer "X" with one question "Why X?"."""
    main = Node(
        id="main",
        type=NodeType.MAIN,
        position=Position(0, 0),
        data=NodeData(label="X", content="X is a thing.", is_expanded=True),
    )
    question = Node(
        id="question-q1",
        type=NodeType.QUESTION,
        data=NodeData(label="Why X?"),
    )
    return [main, question], [Edge.connect("main", "question-q1")]


@pytest.fixture
def mock_client():
    """mock collaborator with no delay."""
    return MockClient(
        responses={"why x": SearchResponse(response="Because Y")},
        delay=0,
    )
