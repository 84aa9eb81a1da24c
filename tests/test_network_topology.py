import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from network_topology import (
    build_topology_from_primitives,
    generate_slug,
    is_topology_empty,
    validate_network,
    validate_primitives,
    validate_topology,
)


class TestNetworkTopology(unittest.TestCase):
    def setUp(self) -> None:
        self.primitives = [
            {"primitiveType": "agent", "agentId": "researcher", "description": "Finds sources"},
            {"primitiveType": "workflow", "workflowId": "wf-report"},
            {"primitiveType": "tool", "toolId": "web.search"},
        ]

    def test_generate_slug(self) -> None:
        self.assertEqual(generate_slug("  Sales Ops / EMEA!! "), "sales-ops-emea")
        self.assertEqual(generate_slug(""), "")

    def test_is_topology_empty(self) -> None:
        self.assertTrue(is_topology_empty(None))
        self.assertTrue(is_topology_empty({"nodes": [], "edges": []}))
        self.assertFalse(is_topology_empty({"nodes": [{"id": "router"}], "edges": []}))

    def test_build_from_primitives(self) -> None:
        topology = build_topology_from_primitives(self.primitives)
        ids = [node["id"] for node in topology["nodes"]]
        self.assertEqual(ids, ["router", "agent-researcher", "workflow-wf-report", "tool-web.search"])
        self.assertEqual(len(topology["edges"]), 3)
        self.assertTrue(all(edge["source"] == "router" for edge in topology["edges"]))
        agent_node = topology["nodes"][1]
        self.assertEqual(agent_node["data"], {"primitiveType": "agent", "agentId": "researcher", "label": "Finds sources"})
        self.assertEqual(topology["nodes"][2]["data"]["label"], "wf-report")

    def test_built_topology_validates(self) -> None:
        topology = build_topology_from_primitives(self.primitives)
        result = validate_network(topology, self.primitives, {"agent": ["researcher"], "workflow": ["wf-report"]})
        self.assertTrue(result["ok"], result["errors"])
        self.assertEqual(result["warnings"], [])
        self.assertEqual(result["summary"]["nodeCount"], 4)
        self.assertEqual(result["summary"]["primitiveNodes"], {"agent": 1, "workflow": 1, "tool": 1})

    def test_primitive_errors(self) -> None:
        result = validate_primitives(
            [
                {"primitiveType": "agent"},
                {"primitiveType": "robot", "agentId": "x"},
                {"primitiveType": "tool", "toolId": "t", "agentId": "stray"},
                {"primitiveType": "tool", "toolId": "t"},
            ]
        )
        self.assertFalse(result["ok"])
        self.assertEqual([e["path"] for e in result["errors"]], ["$.primitives[0].agentId", "$.primitives[1].primitiveType"])
        self.assertEqual(
            [w["code"] for w in result["warnings"]],
            ["NETWORK_PRIMITIVE_EXTRA_REF", "NETWORK_DUPLICATE_PRIMITIVE"],
        )

    def test_unknown_primitive_reference(self) -> None:
        result = validate_primitives(self.primitives, {"agent": ["someone-else"]})
        self.assertEqual([e["code"] for e in result["errors"]], ["NETWORK_UNKNOWN_PRIMITIVE"])

    def test_edges_to_unknown_nodes(self) -> None:
        topology = {
            "nodes": [{"id": "router", "type": "router"}, {"id": "a", "type": "agent"}],
            "edges": [{"id": "e1", "source": "router", "target": "ghost"}, {"id": "e1", "source": "router", "target": "a"}],
        }
        result = validate_topology(topology)
        codes = [e["code"] for e in result["errors"]]
        self.assertEqual(codes, ["NETWORK_EDGE_UNKNOWN_NODE", "NETWORK_DUPLICATE_EDGE_ID"])
        self.assertEqual(result["errors"][0]["detail"], {"missing": ["ghost"]})

    def test_reachability_and_router_warnings(self) -> None:
        topology = {
            "nodes": [{"id": "router", "type": "router"}, {"id": "a"}, {"id": "b"}],
            "edges": [{"source": "router", "target": "a"}, {"source": "b", "target": "b"}],
        }
        result = validate_topology(topology)
        self.assertTrue(result["ok"])
        codes = [w["code"] for w in result["warnings"]]
        self.assertIn("NETWORK_SELF_LOOP", codes)
        self.assertIn("NETWORK_UNREACHABLE_NODE", codes)

        no_router = validate_topology({"nodes": [{"id": "a"}], "edges": []})
        self.assertEqual([w["code"] for w in no_router["warnings"]], ["NETWORK_NO_ROUTER"])

    def test_node_must_match_primitive(self) -> None:
        topology = build_topology_from_primitives(self.primitives)
        result = validate_network(topology, self.primitives[:1])
        self.assertFalse(result["ok"])
        self.assertEqual({e["code"] for e in result["errors"]}, {"NETWORK_NODE_UNKNOWN_PRIMITIVE"})

    def test_malformed_topology(self) -> None:
        result = validate_topology({"nodes": {}, "edges": None})
        self.assertFalse(result["ok"])
        self.assertIsNone(result["summary"])
        self.assertEqual(len(result["errors"]), 2)

    def test_malformed_primitives_and_edge_ids(self) -> None:
        primitives = [1, {"primitiveType": ["agent"], "agentId": "x"}, {"primitiveType": "tool", "toolId": "web.search"}]
        topology = build_topology_from_primitives(primitives)
        self.assertEqual([node["id"] for node in topology["nodes"]], ["router", "tool-web.search"])
        result = validate_network(topology, primitives)
        self.assertFalse(result["ok"])
        self.assertEqual(
            [e["path"] for e in result["errors"]],
            ["$.primitives[0]", "$.primitives[1].primitiveType"],
        )
        topology["edges"][0]["id"] = ["router", "tool"]
        edges = validate_topology(topology)
        self.assertEqual([(e["code"], e["path"]) for e in edges["errors"]], [("NETWORK_TOPOLOGY_INVALID", "$.edges[0].id")])


if __name__ == "__main__":
    unittest.main()
