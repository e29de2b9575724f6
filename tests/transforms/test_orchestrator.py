"""Tests for transform orchestration: resolution, filtering, limits and merging."""

import re

import pytest

from conftest import make_descriptor, resolve_ip
from recongraph.errors import UnknownTransformError
from recongraph.graph.identity import make_edge_id, make_group_id, make_id
from recongraph.models.elements import Selection
from recongraph.models.events import DiagnosticLevel
from recongraph.transforms.orchestrator import (
    Extraction,
    TransformFilter,
    TransformOrchestrator,
    TransformSettings,
)
from recongraph.transforms.registry import TransformRegistry

IP_ID = make_id("ipv4", "93.184.216.34")


def fan_out(count):
    def build(node, options):
        return [
            {"type": "ipv4", "label": f"10.0.0.{i}", "edges": [node["id"]]}
            for i in range(count)
        ]
    return build


def recorder(seen):
    def build(node, options):
        seen.append(node)
        return []
    return build


def messages(report, level=None):
    return [
        d.message for d in report.diagnostics
        if level is None or d.level == level
    ]


def orchestrator_for(*descriptors, **kwargs):
    kwargs.setdefault("max_nodes_warn", 0)
    kwargs.setdefault("max_nodes_cap", 0)
    kwargs.setdefault("heartbeat_interval", 0)
    return TransformOrchestrator(TransformRegistry(*descriptors), **kwargs)


@pytest.fixture
def seeded(store, domain_id):
    store.upsert([{"type": "domain", "label": "example.com"}])
    return store, Selection.of([domain_id])


class TestNamedRun:

    @pytest.mark.asyncio
    async def test_merges_results(self, seeded, domain_id):
        store, selection = seeded
        orchestrator = orchestrator_for(make_descriptor("resolve", ["domain"], resolve_ip))

        report = await orchestrator.run(store, "resolve", selection)

        assert report.selection.nodes == (IP_ID,)
        assert store.has_edge(make_edge_id("", domain_id, IP_ID))
        assert len(report.jobs) == 1
        assert report.jobs[0].input_count == 1
        assert report.jobs[0].result_count == 1
        assert 'Starting transform "Resolve" on 1 nodes...' in messages(report)
        assert 'Transform "Resolve" finished with 1 results' in messages(report)
        assert "Attempting to add 1 elements" in messages(report)

    @pytest.mark.asyncio
    async def test_alias(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(
            make_descriptor("resolve", ["domain"], resolve_ip, alias=["dns"]),
        )
        report = await orchestrator.run(store, "DNS", selection)
        assert report.selection.nodes == (IP_ID,)

    @pytest.mark.asyncio
    async def test_named_run_ignores_types(self, store):
        store.upsert([{"id": "o", "type": "org", "label": "ACME"}])
        seen = []
        orchestrator = orchestrator_for(make_descriptor("look", ["domain"], recorder(seen)))
        await orchestrator.run(store, "look", Selection.of(["o"]))
        assert [n["id"] for n in seen] == ["o"]

    @pytest.mark.asyncio
    async def test_unknown_name_raises_before_any_job(self, seeded):
        store, selection = seeded
        seen = []
        orchestrator = orchestrator_for(make_descriptor("look", ["domain"], recorder(seen)))
        with pytest.raises(UnknownTransformError):
            await orchestrator.run(store, "nope", selection)
        assert seen == []
        assert store.node_count == 1

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(make_descriptor("resolve", ["domain"], resolve_ip))
        await orchestrator.run(store, "resolve", selection)
        await orchestrator.run(store, "resolve", selection)
        assert store.node_count == 2
        assert store.edge_count == 1

    @pytest.mark.asyncio
    async def test_transform_sees_copies(self, seeded, domain_id):
        store, selection = seeded

        def vandal(node, options):
            node["label"] = "changed"
            node["props"]["x"] = 1
            return []

        orchestrator = orchestrator_for(make_descriptor("vandal", ["domain"], vandal))
        await orchestrator.run(store, "vandal", selection)
        assert store.node(domain_id)["label"] == "example.com"
        assert store.node(domain_id)["props"] == {}

    @pytest.mark.asyncio
    async def test_options_passed_through(self, seeded):
        store, selection = seeded
        seen = []

        def build(node, options):
            seen.append(options)
            return []

        orchestrator = orchestrator_for(make_descriptor("opt", ["domain"], build))
        await orchestrator.run(store, "opt", selection, options={"depth": 2})
        assert seen == [{"depth": 2}]

    @pytest.mark.asyncio
    async def test_empty_selection(self, store):
        orchestrator = orchestrator_for(make_descriptor("resolve", ["domain"], resolve_ip))
        report = await orchestrator.run(store, "resolve", Selection())
        assert report.selection.is_empty
        assert report.jobs[0].input_count == 0


class TestWildcard:

    @pytest.mark.asyncio
    async def test_only_matching_types_run(self, store):
        store.upsert([{"id": "o", "type": "org", "label": "ACME"}])
        domain_seen, org_seen = [], []
        orchestrator = orchestrator_for(
            make_descriptor("dom", ["domain"], recorder(domain_seen)),
            make_descriptor("org", ["org", "brand"], recorder(org_seen)),
        )

        report = await orchestrator.run(store, "*", Selection.of(["o"]))

        assert [job.name for job in report.jobs] == ["org"]
        assert domain_seen == []
        assert [n["id"] for n in org_seen] == ["o"]

    @pytest.mark.asyncio
    async def test_inferred_type_makes_applicable_but_explicit_type_feeds(self, store):
        store.upsert([
            {"id": "d", "type": "domain", "label": "example.com"},
            {"id": "n", "type": "nick", "label": "example.org"},
        ])
        seen = []
        orchestrator = orchestrator_for(make_descriptor("dom", ["domain"], recorder(seen)))
        await orchestrator.run(store, "*", Selection.of(["d", "n"]))
        assert [n["id"] for n in seen] == ["d"]

    @pytest.mark.asyncio
    async def test_inferred_type_alone(self, store):
        store.upsert([{"id": "n", "type": "nick", "label": "example.org"}])
        seen = []
        orchestrator = orchestrator_for(make_descriptor("dom", ["domain"], recorder(seen)))
        report = await orchestrator.run(store, "*", Selection.of(["n"]))
        assert [job.name for job in report.jobs] == ["dom"]
        assert report.jobs[0].input_count == 0
        assert seen == []

    @pytest.mark.asyncio
    async def test_noise_filter(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(
            make_descriptor("quiet", ["domain"], noise=1),
            make_descriptor("loud", ["domain"], noise=50),
        )
        report = await orchestrator.run(
            store, "*", selection,
            settings=TransformSettings(filter=TransformFilter(noise=10)),
        )
        assert [job.name for job in report.jobs] == ["quiet"]

    @pytest.mark.asyncio
    async def test_without_filter_noise_is_ignored(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(
            make_descriptor("quiet", ["domain"], noise=1),
            make_descriptor("loud", ["domain"], noise=50),
        )
        report = await orchestrator.run(store, "*", selection)
        assert {job.name for job in report.jobs} == {"quiet", "loud"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("transform_filter,expected", [
        (TransformFilter(noise=100, name="^cert"), ["certSearch"]),
        (TransformFilter(noise=100, alias="^dn"), ["dnsLookup"]),
        (TransformFilter(noise=100, title="Cert"), ["certSearch"]),
        (TransformFilter(noise=100, tag="^passive$"), ["dnsLookup"]),
        (TransformFilter(noise=100, name="^cert", tag="^passive$"), ["dnsLookup", "certSearch"]),
    ])
    async def test_metadata_patterns(self, seeded, transform_filter, expected):
        store, selection = seeded
        orchestrator = orchestrator_for(
            make_descriptor("dnsLookup", ["domain"], title="DNS Lookup",
                            alias=["dns"], tags=["passive"]),
            make_descriptor("certSearch", ["domain"], title="Cert Search",
                            alias=["certs"], tags=["ce"]),
        )
        report = await orchestrator.run(
            store, "*", selection, settings=TransformSettings(filter=transform_filter),
        )
        assert [job.name for job in report.jobs] == expected

    @pytest.mark.asyncio
    async def test_invalid_pattern_raises(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(make_descriptor("dns", ["domain"]))
        with pytest.raises(re.error):
            await orchestrator.run(
                store, "*", selection,
                settings=TransformSettings(filter=TransformFilter(name="(")),
            )

    @pytest.mark.asyncio
    async def test_priority_order(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(
            make_descriptor("late", ["domain"], priority=5),
            make_descriptor("early", ["domain"], priority=0),
            make_descriptor("middle", ["domain"], priority=1),
        )
        report = await orchestrator.run(store, "*", selection)
        assert [job.name for job in report.jobs] == ["early", "middle", "late"]
        starts = [m for m in messages(report) if m.startswith("Starting")]
        assert starts[0] == 'Starting transform "Early" on 1 nodes...'


class TestExtraction:

    @pytest.mark.asyncio
    async def test_label_rewritten_from_props(self, store):
        store.upsert([
            {"id": "a", "type": "domain", "label": "a.com", "props": {"ssl": {"cn": "x.com"}}},
            {"id": "b", "type": "domain", "label": "b.com"},
        ])
        seen = []
        orchestrator = orchestrator_for(make_descriptor("look", ["domain"], recorder(seen)))
        await orchestrator.run(
            store, "look", Selection.of(["a", "b"]),
            settings=TransformSettings(
                extract=Extraction(property="ssl.cn", prefix="*.", suffix="!"),
            ),
        )
        assert [n["label"] for n in seen] == ["*.x.com!", "*.!"]
        assert store.node("a")["label"] == "a.com"

    def test_apply_non_string_value(self):
        extraction = Extraction(property="port")
        assert extraction.apply({"props": {"port": 443}})["label"] == "443"


class TestLimits:

    @pytest.mark.asyncio
    async def test_cap_truncates(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(
            make_descriptor("wide", ["domain"], fan_out(5)), max_nodes_cap=3,
        )
        report = await orchestrator.run(store, "wide", selection)
        assert len(report.results) == 3
        assert report.jobs[0].capped
        assert report.jobs[0].result_count == 3
        assert 'Transform "Wide" nodes capped to 3' in messages(report, DiagnosticLevel.WARN)
        assert store.node_count == 4

    @pytest.mark.asyncio
    async def test_warn_does_not_truncate(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(
            make_descriptor("wide", ["domain"], fan_out(5)), max_nodes_warn=2,
        )
        report = await orchestrator.run(store, "wide", selection)
        assert len(report.results) == 5
        assert not report.jobs[0].capped
        assert 'Transform "Wide" will add 5 nodes' in messages(report, DiagnosticLevel.WARN)

    @pytest.mark.asyncio
    async def test_per_call_override(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(
            make_descriptor("wide", ["domain"], fan_out(5)), max_nodes_cap=4,
        )
        report = await orchestrator.run(
            store, "wide", selection, settings=TransformSettings(max_nodes_cap=2),
        )
        assert len(report.results) == 2

    @pytest.mark.asyncio
    async def test_zero_override_falls_back_to_default(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(
            make_descriptor("wide", ["domain"], fan_out(5)), max_nodes_cap=4,
        )
        report = await orchestrator.run(
            store, "wide", selection, settings=TransformSettings(max_nodes_cap=0),
        )
        assert len(report.results) == 4

    @pytest.mark.asyncio
    async def test_cap_is_per_job(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(
            make_descriptor("one", ["domain"], fan_out(3)),
            make_descriptor("two", ["domain"], fan_out(3)),
            max_nodes_cap=3,
        )
        report = await orchestrator.run(store, "*", selection)
        assert len(report.results) == 6
        assert not any(job.capped for job in report.jobs)


class TestGrouping:

    @pytest.mark.asyncio
    async def test_each_job_gets_its_group(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(
            make_descriptor("alpha", ["domain"], fan_out(2)),
            make_descriptor("beta", ["domain"], resolve_ip),
        )
        await orchestrator.run(store, "*", selection, settings=TransformSettings(group=True))

        alpha = make_group_id("Alpha")
        beta = make_group_id("Beta")
        assert alpha != beta
        assert store.node(alpha)["type"] == "group"
        assert store.node(alpha)["props"]["title"] == "Alpha"
        assert store.node(IP_ID)["parent"] == beta
        assert store.node(make_id("ipv4", "10.0.0.0"))["parent"] == alpha
        assert "parent" not in store.node(alpha)
        groups = store.query('[type = "group"]').nodes
        assert set(groups) == {alpha, beta}

    @pytest.mark.asyncio
    async def test_group_label_override(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(
            make_descriptor("alpha", ["domain"], fan_out(1), group="Hosts"),
        )
        await orchestrator.run(store, "alpha", selection, settings=TransformSettings(group=True))
        assert store.has_node(make_group_id("Hosts"))

    @pytest.mark.asyncio
    async def test_no_group_node_without_results(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(make_descriptor("empty", ["domain"]))
        await orchestrator.run(store, "empty", selection, settings=TransformSettings(group=True))
        assert store.node_count == 1


class TestFailures:

    @pytest.mark.asyncio
    async def test_failing_job_does_not_abort_siblings(self, seeded, failing_factory):
        store, selection = seeded
        orchestrator = orchestrator_for(
            make_descriptor("broken", ["domain"], factory=failing_factory),
            make_descriptor("resolve", ["domain"], resolve_ip),
        )
        report = await orchestrator.run(store, "*", selection)

        assert report.selection.nodes == (IP_ID,)
        broken = next(job for job in report.jobs if job.name == "broken")
        assert broken.failed
        assert broken.error == "RuntimeError: upstream exploded"
        assert 'Transform "Broken" failed' in messages(report, DiagnosticLevel.WARN)
        errors = [d for d in report.diagnostics if d.level == DiagnosticLevel.ERROR]
        assert errors[0].source == "Broken"
        assert "upstream exploded" in errors[0].detail
        assert 'Transform "Broken" finished with 0 results' in messages(report)

    @pytest.mark.asyncio
    async def test_malformed_result_dropped(self, seeded):
        store, selection = seeded

        def build(node, options):
            return [
                {"type": "ipv4", "label": "1.1.1.1", "props": "not a mapping"},
                {"type": "ipv4", "label": "2.2.2.2"},
            ]

        orchestrator = orchestrator_for(make_descriptor("sloppy", ["domain"], build))
        report = await orchestrator.run(store, "sloppy", selection)
        assert len(report.results) == 1
        assert "Dropping malformed result" in messages(report, DiagnosticLevel.ERROR)

    @pytest.mark.asyncio
    async def test_result_without_type_reported_by_store(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(
            make_descriptor("untyped", ["domain"], lambda node, options: [{"label": "x"}]),
        )
        report = await orchestrator.run(store, "untyped", selection)
        assert report.selection.is_empty
        assert messages(report, DiagnosticLevel.ERROR)


class TestReporting:

    @pytest.mark.asyncio
    async def test_heartbeat(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(
            make_descriptor("slow", ["domain"], delay=0.1), heartbeat_interval=0.01,
        )
        report = await orchestrator.run(store, "slow", selection)
        beats = [m for m in messages(report) if "still running" in m]
        assert beats
        assert beats[0].startswith('Transform "Slow" still running ')

    @pytest.mark.asyncio
    async def test_no_heartbeat_after_finish(self, seeded):
        store, selection = seeded
        orchestrator = orchestrator_for(
            make_descriptor("slow", ["domain"], delay=0.05), heartbeat_interval=0.01,
        )
        report = await orchestrator.run(store, "slow", selection)
        finished = messages(report).index('Transform "Slow" finished with 0 results')
        assert not any("still running" in m for m in messages(report)[finished:])

    @pytest.mark.asyncio
    async def test_subscribers_receive_diagnostics(self, seeded):
        store, selection = seeded
        received = []
        orchestrator = orchestrator_for(
            make_descriptor("resolve", ["domain"], resolve_ip), subscribers=[received.append],
        )
        report = await orchestrator.run(store, "resolve", selection)
        assert received == report.diagnostics

    @pytest.mark.asyncio
    async def test_weight_measured_on_input(self, seeded, domain_id):
        store, selection = seeded
        orchestrator = orchestrator_for(make_descriptor("wide", ["domain"], fan_out(3)))
        await orchestrator.run(store, "wide", selection, settings=TransformSettings(weight=True))
        assert store.node(domain_id)["weight"] == 3
        assert "weight" not in store.node(make_id("ipv4", "10.0.0.0"))
