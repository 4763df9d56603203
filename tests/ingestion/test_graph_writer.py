"""
Tests for the transactional graph writer and the composite build operations.

These tests verify:
1. Points are deduplicated by id and tagged points become POIs
2. Way proxy chains, geometry kinds and travel direction
3. Relation members, geometry accumulation and missing members
4. User/changeset provenance is created once and linked
5. Batching: chains stay intact across any number of commit boundaries
6. Dataset lifecycle: reuse, source conflicts, counters and abort
"""

import pytest

from osmgraph.ingestion.builder import DatasetConflictError
from osmgraph.ingestion.geometry import GeometryKind
from osmgraph.ingestion.graph_writer import SingleSlotCache, TransactionalGraphWriter
from osmgraph.ingestion.run_stats import (
    DUPLICATE_POINT,
    DUPLICATE_RELATION,
    DUPLICATE_WAY,
    LOOKUP_CHANGESET,
    MISSING_CHANGESET,
    MISSING_MEMBER,
    MISSING_POINT,
    MISSING_USER,
)
from osmgraph.neo.schema import OSMRelation
from osmgraph.neo.store import INCOMING, StaleHandleError


def build_square(writer, point_props):
    """Points 1..4 at the corners of the unit square."""
    for osm_id, (lon, lat) in enumerate([(0, 0), (1, 0), (1, 1), (0, 1)], start=1):
        writer.build_point(point_props(osm_id, lon, lat))


class TestPoints:
    def test_point_is_created_with_provenance(self, writer, store, reader, point_props):
        writer.build_point(point_props(1, 10.0, 50.0))
        writer.finish()

        r = reader()
        point = r.find("node", 1)
        assert point is not None
        props = r.tx.get_properties(point)
        assert (props["lon"], props["lat"]) == (10.0, 50.0)
        assert "uid" not in props and "changeset" not in props
        assert r.tx.get_properties(r.changeset_of(point))["changeset"] == 100
        assert r.tx.get_properties(r.user_of(point))["name"] == "mapper"

    def test_duplicate_point_returns_existing(self, writer, store, point_props):
        first = writer.build_point(point_props(1, 0.0, 0.0))
        second = writer.build_point(point_props(1, 5.0, 5.0))
        writer.finish()

        assert second.same_entity(first)
        assert writer.stats.anomalies[DUPLICATE_POINT] == 1
        assert store.node_count("node") == 1
        assert store.nodes("node")[0][1]["lon"] == 0.0

    def test_tagged_point_is_a_poi(self, writer, store, reader, point_props):
        writer.build_point(point_props(1, 3.0, 4.0), {"amenity": "cafe", "created_by": "JOSM"})
        writer.finish()

        r = reader()
        point = r.find("node", 1)
        assert r.tags_of(point) == {"amenity": "cafe"}
        geometry = r.geometry_of(point)
        assert geometry.kind == GeometryKind.POINT
        assert geometry.vertices == 1
        assert geometry.bbox.as_bbox() == [3.0, 3.0, 4.0, 4.0]
        assert r.dataset_counts(r.dataset("test"))["poiCount"] == 1

    def test_redundant_tags_only_is_a_plain_point(self, writer, store, point_props):
        writer.build_point(point_props(1, 0.0, 0.0), {"created_by": "JOSM"})
        writer.finish()

        assert store.node_count("tags") == 0
        assert store.node_count("geometry") == 0
        assert writer.tag_stats.kinds() == []

    def test_all_points_gives_every_point_a_geometry(self, writer, store, point_props):
        writer.build_point(point_props(1, 0.0, 0.0), all_points=True)
        writer.finish()
        assert store.node_count("geometry") == 1

    def test_build_before_dataset_fails(self, store, point_props):
        writer = TransactionalGraphWriter(store, commit_interval=100)
        with pytest.raises(RuntimeError):
            writer.build_point(point_props(1, 0.0, 0.0))


class TestWays:
    def test_closed_way_is_a_polygon(self, writer, store, reader, point_props, way_props):
        build_square(writer, point_props)
        writer.build_way(way_props(10), [1, 2, 3, 1])
        writer.finish()

        r = reader()
        way = r.find("way", 10)
        assert r.way_points(way).coordinates() == [(0, 0), (1, 0), (1, 1), (0, 0)]
        geometry = r.geometry_of(way)
        assert geometry.kind == GeometryKind.POLYGON
        assert geometry.vertices == 4
        assert geometry.bbox.as_bbox() == [0.0, 1.0, 0.0, 1.0]
        assert store.node_count("proxy") == 4
        assert store.relationship_count(OSMRelation.FIRST_NODE) == 1

    def test_missing_point_is_skipped(self, writer, store, reader, point_props, way_props):
        build_square(writer, point_props)
        writer.build_way(way_props(10), [1, 2, 999])
        writer.finish()

        r = reader()
        way = r.find("way", 10)
        assert len(list(r.way_points(way))) == 2
        assert r.geometry_of(way).kind == GeometryKind.LINE
        assert writer.stats.anomalies[MISSING_POINT] == 1

    def test_consecutive_duplicate_point_gets_no_proxy(
        self, writer, store, point_props, way_props
    ):
        build_square(writer, point_props)
        writer.build_way(way_props(10), [1, 1, 2])
        writer.finish()

        assert store.node_count("proxy") == 2
        assert store.relationship_count(OSMRelation.NEXT) == 1

    def test_single_point_way_is_a_point(self, writer, reader, point_props, way_props):
        build_square(writer, point_props)
        writer.build_way(way_props(10), [3])
        writer.finish()

        r = reader()
        assert r.geometry_of(r.find("way", 10)).kind == GeometryKind.POINT

    def test_way_without_points_has_no_geometry(self, writer, store, way_props):
        writer.build_way(way_props(10), [998, 999])
        writer.finish()

        assert store.node_count("way") == 1
        assert store.node_count("geometry") == 0
        assert writer.stats.anomalies[MISSING_POINT] == 2

    def test_next_edges_carry_geodesic_length(self, writer, reader, point_props, way_props):
        build_square(writer, point_props)
        writer.build_way(way_props(10), [1, 2])
        writer.finish()

        r = reader()
        first = r.tx.neighbors(r.find("way", 10), OSMRelation.FIRST_NODE)[0].node
        (edge,) = r.tx.neighbors(first, OSMRelation.NEXT)
        assert edge.properties["length"] == pytest.approx(111319.49, rel=1e-4)

    def test_reverse_oneway_stores_chain_backwards(
        self, writer, reader, point_props, way_props
    ):
        build_square(writer, point_props)
        writer.build_way(
            way_props(10), [1, 2, 3], {"highway": "residential", "oneway": "-1"}
        )
        writer.finish()

        r = reader()
        way = r.find("way", 10)
        props = r.tx.get_properties(way)
        assert props["oneway"] == "BACKWARD"
        assert props["highway"] == "residential"
        first = r.tx.neighbors(way, OSMRelation.FIRST_NODE)[0].node
        assert r.tx.neighbors(first, OSMRelation.NEXT) == []
        assert len(r.tx.neighbors(first, OSMRelation.NEXT, INCOMING)) == 1
        assert r.way_points(way).coordinates() == [(0, 0), (1, 0), (1, 1)]

    def test_ways_are_chained_in_import_order(self, writer, reader, point_props, way_props):
        build_square(writer, point_props)
        for osm_id in (10, 11, 12):
            writer.build_way(way_props(osm_id), [1, 2], {"name": f"Road {osm_id}"})
        writer.finish()

        r = reader()
        ways = list(r.ways(r.dataset("test")))
        assert [r.tx.get_properties(w)["way_osm_id"] for w in ways] == [10, 11, 12]
        assert r.tx.get_properties(ways[0])["name"] == "Road 10"
        assert r.dataset_counts(r.dataset("test"))["wayCount"] == 3

    def test_way_points_prefer_changeset_lookup(self, writer, point_props, way_props):
        build_square(writer, point_props)
        writer.build_way(way_props(10), [1, 2, 3])
        assert writer.stats.point_lookups[LOOKUP_CHANGESET] == 3

    def test_repeated_way_id_returns_existing(
        self, writer, store, reader, point_props, way_props
    ):
        build_square(writer, point_props)
        first = writer.build_way(way_props(10), [1, 2], {"name": "First"})
        second = writer.build_way(way_props(10), [3, 4], {"name": "Second"})
        writer.finish()

        assert second.same_entity(first)
        assert writer.stats.anomalies[DUPLICATE_WAY] == 1
        assert store.node_count("way") == 1
        assert store.node_count("proxy") == 2
        r = reader()
        way = r.find("way", 10)
        assert r.tx.get_properties(way)["name"] == "First"
        assert len(list(r.ways(r.dataset("test")))) == 1
        assert r.dataset_counts(r.dataset("test"))["wayCount"] == 1


class TestRelations:
    def build_members(self, writer, point_props, way_props):
        build_square(writer, point_props)
        writer.build_point(point_props(5, 5.0, 5.0))
        writer.build_way(way_props(10), [1, 2])
        writer.build_way(way_props(11), [1, 2, 3, 1])
        writer.build_way(way_props(12), [999])

    def test_line_members_give_multi_line(self, writer, reader, point_props, way_props):
        self.build_members(writer, point_props, way_props)
        writer.build_relation(
            {"relation_osm_id": 20, "changeset": "100", "uid": "1", "user": "mapper"},
            [{"type": "way", "ref": "10", "role": "forward"}, {"type": "way", "ref": "11"}],
            {"type": "route", "name": "Line 1"},
        )
        writer.finish()

        r = reader()
        relation = r.find("relation", 20)
        members = r.members_of(relation)
        assert [(r.tx.get_properties(m)["way_osm_id"], role) for m, role in members] == [
            (10, "forward"),
            (11, None),
        ]
        geometry = r.geometry_of(relation)
        assert geometry.kind == GeometryKind.MULTI_LINE
        assert geometry.vertices == 6
        assert r.tx.get_properties(relation)["name"] == "Line 1"
        assert r.changeset_of(relation) is not None

    def test_member_without_geometry_invalidates(self, writer, reader, point_props, way_props):
        self.build_members(writer, point_props, way_props)
        writer.build_relation(
            {"relation_osm_id": 20},
            [{"type": "way", "ref": "10"}, {"type": "way", "ref": "12"}],
        )
        writer.finish()

        r = reader()
        relation = r.find("relation", 20)
        assert len(r.members_of(relation)) == 2
        assert r.geometry_of(relation) is None

    def test_outer_member_makes_polygon(self, writer, reader, point_props, way_props):
        self.build_members(writer, point_props, way_props)
        writer.build_relation(
            {"relation_osm_id": 20},
            [{"type": "way", "ref": "12"}, {"type": "way", "ref": "11", "role": "outer"}],
            {"type": "multipolygon"},
        )
        writer.finish()

        r = reader()
        geometry = r.geometry_of(r.find("relation", 20))
        assert geometry.kind == GeometryKind.POLYGON
        assert geometry.bbox.as_bbox() == [0.0, 1.0, 0.0, 1.0]

    def test_point_members_grow_the_box(self, writer, reader, point_props, way_props):
        self.build_members(writer, point_props, way_props)
        writer.build_relation(
            {"relation_osm_id": 20},
            [{"type": "way", "ref": "10"}, {"type": "node", "ref": "5", "role": "stop"}],
        )
        writer.finish()

        r = reader()
        geometry = r.geometry_of(r.find("relation", 20))
        assert geometry.kind == GeometryKind.MULTI_LINE
        assert geometry.bbox.as_bbox() == [0.0, 5.0, 0.0, 5.0]

    def test_missing_members_are_counted(self, writer, store, point_props, way_props):
        self.build_members(writer, point_props, way_props)
        writer.build_relation({"relation_osm_id": 20}, [])
        writer.build_relation(
            {"relation_osm_id": 21},
            [
                {"type": "way", "ref": "404"},
                {"type": "area", "ref": "10"},
                {"type": "way", "ref": "ten"},
                {"type": "way", "ref": "10"},
                {"type": "way", "ref": "10"},
                {"type": "relation", "ref": "21"},
                {"type": "relation", "ref": "20"},
            ],
        )
        writer.finish()

        # not_found, unsupported_type, malformed_ref, duplicate, self_reference
        assert writer.stats.anomalies[MISSING_MEMBER] == 5
        assert store.relationship_count(OSMRelation.MEMBER) == 2

    def test_relations_are_chained(self, writer, reader):
        writer.build_relation({"relation_osm_id": 20}, [])
        writer.build_relation({"relation_osm_id": 21}, [])
        writer.finish()

        r = reader()
        relations = list(r.relations(r.dataset("test")))
        assert [r.tx.get_properties(x)["relation_osm_id"] for x in relations] == [20, 21]
        assert r.dataset_counts(r.dataset("test"))["relationCount"] == 2

    def test_repeated_relation_id_returns_existing(self, writer, store, reader):
        first = writer.build_relation({"relation_osm_id": 20}, [], {"name": "First"})
        second = writer.build_relation({"relation_osm_id": 20}, [], {"name": "Second"})
        writer.finish()

        assert second.same_entity(first)
        assert writer.stats.anomalies[DUPLICATE_RELATION] == 1
        assert store.node_count("relation") == 1
        r = reader()
        assert r.tx.get_properties(r.find("relation", 20))["name"] == "First"
        assert r.dataset_counts(r.dataset("test"))["relationCount"] == 1


class TestProvenance:
    def test_users_and_changesets_are_created_once(self, writer, store, reader, point_props):
        build_square(writer, point_props)
        writer.build_point(point_props(5, 0.5, 0.5, changeset="101", uid="2", user="other"))
        writer.finish()

        assert store.node_count("user") == 2
        assert store.node_count("changeset") == 2
        assert store.node_count("users") == 1
        assert store.relationship_count(OSMRelation.OSM_USER) == 2
        assert store.relationship_count(OSMRelation.USER) == 2
        assert store.relationship_count(OSMRelation.CHANGESET) == 5

        r = reader()
        dataset = r.dataset("test")
        assert sorted(r.tx.get_properties(u)["uid"] for u in r.users(dataset)) == [1, 2]
        assert len(r.changesets(dataset)) == 2
        counts = r.dataset_counts(dataset)
        assert counts["userCount"] == 2
        assert counts["changesetCount"] == 2
        assert counts["nodeCount"] == 5
        assert writer.users.hits == 3

    def test_missing_user_still_records_changeset(self, writer, store, point_props):
        writer.build_point(point_props(1, 0.0, 0.0, uid=None))
        writer.finish()

        assert writer.stats.anomalies[MISSING_USER] == 1
        assert store.node_count("user") == 0
        assert store.node_count("changeset") == 1
        assert store.relationship_count(OSMRelation.USER) == 0

    def test_unparsable_changeset_is_absorbed(self, writer, store, point_props):
        writer.build_point(point_props(1, 0.0, 0.0, changeset="n/a"))
        writer.finish()

        assert writer.stats.anomalies[MISSING_CHANGESET] == 1
        assert store.node_count("changeset") == 0
        assert store.node_count("node") == 1

    def test_existing_users_root_is_reused(self, make_writer, store, point_props):
        first = make_writer()
        first.build_point(point_props(1, 0.0, 0.0))
        first.finish()

        second = make_writer()
        second.build_point(point_props(2, 0.0, 0.0, changeset="200", uid="2", user="other"))
        second.finish()

        assert store.node_count("users") == 1
        assert store.node_count("user") == 2


class TestBatching:
    def test_chains_survive_commit_after_every_creation(
        self, make_writer, store, reader, point_props, way_props
    ):
        """With a commit after each entity, no chain is broken or orphaned."""
        writer = make_writer(commit_interval=1)
        build_square(writer, point_props)
        writer.build_way(way_props(10), [1, 2, 3, 4, 1], {"highway": "service"})
        writer.build_way(way_props(11), [4, 3])
        writer.build_relation(
            {"relation_osm_id": 20, "changeset": "100", "uid": "1", "user": "mapper"},
            [{"type": "way", "ref": "10", "role": "outer"}, {"type": "way", "ref": "11"}],
        )
        writer.finish()

        assert writer.stats.commits > 20
        assert store.relationship_count(OSMRelation.FIRST_NODE) == 2
        assert store.relationship_count(OSMRelation.NODE) == store.node_count("proxy") == 7
        assert store.relationship_count(OSMRelation.NEXT) == 4 + 1 + 1
        assert store.node_count("user") == 1
        assert store.node_count("changeset") == 1

        r = reader()
        dataset = r.dataset("test")
        ways = list(r.ways(dataset))
        assert len(ways) == 2
        assert r.way_points(ways[0]).coordinates() == [(0, 0), (1, 0), (1, 1), (0, 1), (0, 0)]
        assert r.way_points(ways[1]).coordinates() == [(0, 1), (1, 1)]
        assert r.geometry_of(r.find("relation", 20)).kind == GeometryKind.POLYGON
        counts = r.dataset_counts(dataset)
        assert counts["nodeCount"] == 4
        assert counts["wayCount"] == 2
        assert counts["relationCount"] == 1
        assert counts["userCount"] == 1
        assert counts["changesetCount"] == 1

    def test_max_pending_operations_bounds_transaction_size(
        self, make_writer, store, point_props, way_props
    ):
        writer = make_writer(commit_interval=1000, max_pending_operations=3)
        build_square(writer, point_props)
        writer.build_way(way_props(10), [1, 2, 3])
        commits_before_finish = writer.stats.commits
        writer.finish()

        assert commits_before_finish > 5
        assert store.relationship_count(OSMRelation.FIRST_NODE) == 1
        assert store.node_count("proxy") == 3

    def test_nothing_is_durable_before_the_first_commit(self, writer, store, point_props):
        writer.build_point(point_props(1, 0.0, 0.0))
        assert store.node_count() == 0
        writer.finish()
        assert store.node_count("node") == 1

    def test_refresh_reacquires_handles_after_commit(self, make_writer, point_props):
        writer = make_writer(commit_interval=1)
        point = writer.build_point(point_props(1, 0.0, 0.0))
        writer.build_point(point_props(2, 1.0, 1.0))

        assert point.generation != writer.generation
        fresh = writer.refresh(point)
        assert fresh.same_entity(point)
        assert fresh.generation == writer.generation
        assert writer.properties(point)["node_osm_id"] == 1

    def test_refresh_of_vanished_entity_raises(self, store, make_writer):
        writer = make_writer()
        proxy = writer.create_entity("proxy", {})
        writer.abort()
        writer.tx = store.begin_transaction()
        with pytest.raises(StaleHandleError):
            writer.refresh(proxy)

    @pytest.mark.parametrize(
        "kwargs", [{"commit_interval": 0}, {"max_pending_operations": 0}]
    )
    def test_invalid_batch_settings(self, store, kwargs):
        with pytest.raises(ValueError):
            TransactionalGraphWriter(store, **kwargs)


class TestDatasetLifecycle:
    def test_dataset_is_rooted_under_reference(self, writer, store):
        writer.finish()
        assert store.node_count("reference") == 1
        assert store.relationship_count(OSMRelation.OSM) == 1
        props = store.nodes("dataset")[0][1]
        assert props["name"] == "test"
        assert props["type"] == "osm"

    def test_same_source_reuses_dataset(self, make_writer, store, point_props):
        first = make_writer(source="planet")
        first.build_point(point_props(1, 0.0, 0.0))
        first.finish()
        second = make_writer(source="planet")
        second.build_point(point_props(2, 1.0, 1.0))
        second.finish()

        assert store.node_count("dataset") == 1
        assert store.node_count("reference") == 1
        assert store.nodes("dataset")[0][1]["nodeCount"] == 2

    def test_other_source_conflicts(self, make_writer, store):
        make_writer(source="planet").finish()
        with pytest.raises(DatasetConflictError):
            make_writer(source="extract.osm")
        assert store.node_count("dataset") == 1

    def test_header_properties_and_bounds(self, writer, store, reader):
        writer.set_dataset_properties({"version": "0.6", "name": "ignored", "generator": "x"})
        writer.add_bounds({"name": "bbox", "minlat": "0", "maxlat": "1"})
        writer.finish()

        props = store.nodes("dataset")[0][1]
        assert props["name"] == "test"
        assert props["version"] == "0.6"
        assert props["generator"] == "x"
        assert store.relationship_count(OSMRelation.BBOX) == 1

    def test_abort_discards_open_batch(self, make_writer, store, point_props):
        writer = make_writer()
        writer.build_point(point_props(1, 0.0, 0.0))
        writer.abort()
        writer.abort()

        assert store.node_count() == 0
        assert writer.pending_counts() == {}


class TestSingleSlotCache:
    def test_hit_and_miss(self):
        cache = SingleSlotCache("changeset")
        assert cache.get(1) is None
        cache.put(1, "handle")
        assert cache.get(1) == "handle"
        assert cache.get(2) is None
        cache.clear()
        assert cache.get(1) is None
        assert (cache.hits, cache.misses) == (1, 3)

    def test_none_key_never_hits(self):
        cache = SingleSlotCache("user")
        cache.put(None, "handle")
        assert cache.get(None) is None
