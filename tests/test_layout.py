"""tests for the layered layout."""

from warren.core.layout import (
    EXPANDED_MARGINY,
    MARGINX,
    MARGINY,
    LayoutEngine,
    arrange,
    layout,
    node_size,
)
from warren.core.models import Edge, Node, NodeData, NodeType, Position


def question(node_id, label="q?"):
    return Node(id=node_id, type=NodeType.QUESTION, data=NodeData(label=label))


def rect(node):
    width, height = node_size(node)
    return node.position.x, node.position.y, width, height


def overlapping(a, b):
    ax, ay, aw, ah = rect(a)
    bx, by, bw, bh = rect(b)
    return ax < bx + bw and bx < ax + aw and ay < by + bh and by < ay + ah


class TestLayout:
    """tests for full relayout."""

    def test_empty(self):
        assert layout([], []) == []

    def test_single_expanded_main(self):
        """an expanded answer sits at the margins, with roomier spacing."""
        (main,) = layout([Node.create_main("a", "b")], [])
        assert main.position == Position(MARGINX, EXPANDED_MARGINY)
        assert main.source_position == "right"
        assert main.target_position == "left"

    def test_single_question(self):
        (node,) = layout([question("question-a")], [])
        assert node.position == Position(MARGINX, MARGINY)

    def test_left_to_right(self, sample_nodes, sample_edges):
        """children sit one rank to the right of their parent."""
        nodes = {n.id: n for n in layout(sample_nodes, sample_edges)}
        main = nodes["main"]
        for child_id in ("question-main-0", "question-main-1"):
            assert nodes[child_id].position.x == main.position.x + 600 + 200

    def test_no_overlaps(self, sample_nodes, sample_edges):
        laid = layout(sample_nodes, sample_edges)
        for i, a in enumerate(laid):
            for b in laid[i + 1:]:
                assert not overlapping(a, b)

    def test_input_order_and_identity(self, sample_nodes, sample_edges):
        """output keeps input order and does not touch the inputs."""
        before = [n.position for n in sample_nodes]
        laid = layout(sample_nodes, sample_edges)
        assert [n.id for n in laid] == [n.id for n in sample_nodes]
        assert [n.position for n in sample_nodes] == before
        assert laid[0].data == sample_nodes[0].data

    def test_deterministic(self, sample_nodes, sample_edges):
        first = [n.position for n in layout(sample_nodes, sample_edges)]
        second = [n.position for n in layout(sample_nodes, sample_edges)]
        assert first == second

    def test_cycles_are_tolerated(self):
        """a cycle still lays out with every node placed."""
        nodes = [question("question-a"), question("question-b"), question("question-c")]
        edges = [Edge.connect("question-a", "question-b"), Edge.connect("question-b", "question-c"),
                 Edge.connect("question-c", "question-a")]
        laid = layout(nodes, edges)
        xs = sorted({n.position.x for n in laid})
        assert len(xs) == 3

    def test_long_edges_and_dangling(self):
        """long edges span ranks; edges to unknown nodes are ignored."""
        nodes = [question("question-a"), question("question-b"), question("question-c")]
        edges = [
            Edge.connect("question-a", "question-b"),
            Edge.connect("question-b", "question-c"),
            Edge.connect("question-a", "question-c"),
            Edge.connect("question-a", "ghost"),
            Edge.connect("question-a", "question-a"),
        ]
        laid = {n.id: n for n in layout(nodes, edges)}
        assert laid["question-a"].position.x < laid["question-b"].position.x < laid["question-c"].position.x

    def test_unexpanded_uses_tighter_spacing(self):
        nodes = [question("question-a"), question("question-b")]
        laid = layout(nodes, [Edge.connect("question-a", "question-b")])
        assert laid[1].position.x - laid[0].position.x == 300 + 100

    def test_custom_spacing(self):
        engine = LayoutEngine(marginx=0, marginy=0)
        (node,) = engine.layout([question("question-a")], [])
        assert node.position == Position(0, 0)


class TestArrange:
    """tests for incremental placement."""

    def test_existing_nodes_keep_positions(self, sample_nodes, sample_edges):
        """nodes seen before never move."""
        laid = layout(sample_nodes, sample_edges)
        moved = [Node(id=n.id, type=n.type, position=Position(n.position.x + 7, n.position.y), data=n.data)
                 for n in laid]
        new = question("question-new")
        nodes = moved + [new]
        edges = sample_edges + [Edge.connect("main", "question-new")]

        arranged = {n.id: n for n in arrange(nodes, edges, previous=moved)}

        for n in moved:
            assert arranged[n.id].position == n.position

    def test_new_node_placed_next_to_parent(self, sample_nodes, sample_edges):
        laid = layout(sample_nodes, sample_edges)
        new = question("question-new")
        edges = sample_edges + [Edge.connect("main", "question-new")]

        arranged = {n.id: n for n in arrange(laid + [new], edges, previous=laid)}

        main = arranged["main"]
        assert arranged["question-new"].position.x == main.position.x + 600 + 200

    def test_new_node_overlaps_nothing(self, sample_nodes, sample_edges):
        laid = layout(sample_nodes, sample_edges)
        new = question("question-new")
        edges = sample_edges + [Edge.connect("main", "question-new")]

        arranged = arrange(laid + [new], edges, previous=laid)

        placed = arranged[-1]
        for other in arranged[:-1]:
            assert not overlapping(placed, other)

    def test_removed_nodes_dropped(self, sample_nodes, sample_edges):
        """previous positions of nodes no longer present are ignored."""
        laid = layout(sample_nodes, sample_edges)
        arranged = arrange(laid[:2], sample_edges[:1], previous=laid)
        assert [n.id for n in arranged] == ["main", "question-main-0"]
        assert arranged[0].position == laid[0].position

    def test_previous_as_mapping(self):
        nodes = [question("question-a")]
        (node,) = arrange(nodes, [], previous={"question-a": Position(5, 5)})
        assert node.position == Position(5, 5)

    def test_no_previous_is_full_layout(self, sample_nodes, sample_edges):
        assert arrange(sample_nodes, sample_edges) == layout(sample_nodes, sample_edges)
