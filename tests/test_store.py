import asyncio
import json
import pytest
from core.exceptions import InvalidCoordinatesError, MigrationError
from core.store import CacheEntry, GeolocationStore, longitude_ranges, source_priority
from datetime import UTC, datetime, timedelta

NYC = {'latitude': 40.7128, 'longitude': -74.006}


def at(hour, minute=0):
    return datetime(2024, 1, 15, hour, minute, tzinfo=UTC)


class TestSourcePriority:
    """Test suite for source ranking"""

    def test_known_sources_are_ordered(self):
        """Test the documented ranking"""
        order = [
            'image_exif',
            'database_cached',
            'timeline_exact',
            'timeline_interpolation',
            'nearby_images',
            'enhanced_fallback',
            'spatial_interpolation',
        ]
        priorities = [source_priority(source) for source in order]
        assert priorities == sorted(priorities, reverse=True)
        assert len(set(priorities)) == len(priorities)

    def test_unknown_source_is_zero(self):
        """Test unlisted sources rank lowest"""
        assert source_priority('something_else') == 0
        assert source_priority(None) == 0


class TestLongitudeRanges:
    """Test suite for longitude prefilter intervals"""

    @pytest.mark.parametrize(
        'longitude,delta,expected',
        [
            (10.0, 1.0, [(9.0, 11.0)]),
            (179.5, 1.0, [(178.5, 180.0), (-180.0, -179.5)]),
            (-179.5, 1.0, [(179.5, 180.0), (-180.0, -178.5)]),
            (0.0, 200.0, [(-180.0, 180.0)]),
        ],
    )
    def test_longitude_ranges(self, longitude, delta, expected):
        """Test intervals split at the antimeridian"""
        ranges = longitude_ranges(longitude, delta)
        assert ranges == [pytest.approx(r) for r in expected]


class TestGeolocationStore:
    """Test suite for the SQLite-backed store"""

    @pytest.fixture
    async def store(self, tmp_path):
        """Create an initialized store backed by a temporary database"""
        store = GeolocationStore(db_path=tmp_path / 'geo.db', export_path=tmp_path / 'export.json', enable_sqlite=True)
        await store.initialize()
        yield store
        await store.close()

    async def test_initialize_creates_schema(self, store):
        """Test initialization applies every migration"""
        assert store.sqlite_enabled
        status = await store.migrations.get_status()
        assert status['is_up_to_date']

    async def test_higher_priority_replaces_lower(self, store):
        """Test a better source overwrites an existing entry"""
        assert await store.store_coordinates('a.jpg', NYC, 'timeline_exact')
        assert await store.store_coordinates('a.jpg', {'latitude': 48.85, 'longitude': 2.35}, 'image_exif')

        entry = await store.get_coordinates('a.jpg')
        assert entry.source == 'image_exif'
        assert entry.latitude == 48.85

    async def test_lower_priority_is_rejected(self, store):
        """Test a worse source leaves the entry untouched"""
        assert await store.store_coordinates('a.jpg', NYC, 'image_exif')
        assert not await store.store_coordinates('a.jpg', {'latitude': 48.85, 'longitude': 2.35}, 'timeline_exact')

        entry = await store.get_coordinates('a.jpg')
        assert entry.source == 'image_exif'
        assert entry.latitude == 40.7128

    async def test_equal_priority_is_rejected(self, store):
        """Test the first writer of a source keeps the entry"""
        assert await store.store_coordinates('a.jpg', NYC, 'nearby_images')
        assert not await store.store_coordinates('a.jpg', {'latitude': 48.85, 'longitude': 2.35}, 'nearby_images')

    async def test_unknown_source_only_fills_empty_slot(self, store):
        """Test unranked sources are accepted only when nothing is stored"""
        assert await store.store_coordinates('a.jpg', NYC, 'manual')
        assert not await store.store_coordinates('a.jpg', NYC, 'manual')
        assert await store.store_coordinates('a.jpg', NYC, 'spatial_interpolation')

    async def test_original_timestamp_is_persisted(self, store):
        """Test the photo capture time is stored, not the write time"""
        await store.store_coordinates('a.jpg', NYC, 'timeline_exact', '2024-01-15T12:00:00Z')

        assert (await store.get_coordinates('a.jpg')).timestamp == at(12)
        async with store.db.execute("SELECT timestamp FROM geolocation WHERE file_path = 'a.jpg'") as cursor:
            row = await cursor.fetchone()
        assert row['timestamp'] == '2024-01-15T12:00:00.000Z'

    async def test_missing_timestamp_defaults_to_now(self, store):
        """Test writes without a capture time use the current time"""
        await store.store_coordinates('a.jpg', NYC, 'timeline_exact')

        entry = await store.get_coordinates('a.jpg')
        assert abs(entry.timestamp - datetime.now(UTC)) < timedelta(seconds=5)

    @pytest.mark.parametrize(
        'coords',
        [{'latitude': 0.0, 'longitude': 0.0}, {'latitude': 91.0, 'longitude': 0.5}, {'latitude': 10.0}, {}],
    )
    async def test_invalid_coordinates_raise(self, store, coords):
        """Test invalid coordinates are rejected before any write"""
        with pytest.raises(InvalidCoordinatesError):
            await store.store_coordinates('a.jpg', coords, 'image_exif')

        assert await store.get_coordinates('a.jpg') is None

    async def test_concurrent_writers_keep_highest_priority(self, store):
        """Test racing writers for one photo end with the best source"""
        sources = ['spatial_interpolation', 'nearby_images', 'image_exif', 'timeline_exact', 'enhanced_fallback']

        results = await asyncio.gather(*(store.store_coordinates('a.jpg', NYC, source) for source in sources))

        assert results[0]
        assert (await store.get_coordinates('a.jpg')).source == 'image_exif'
        async with store.db.execute("SELECT source FROM geolocation WHERE file_path = 'a.jpg'") as cursor:
            assert (await cursor.fetchone())['source'] == 'image_exif'

    async def test_durable_read_through(self, store):
        """Test entries missing from memory are read from SQLite and cached"""
        await store.store_coordinates('a.jpg', {**NYC, 'accuracy': 15.0, 'confidence': 0.8}, 'timeline_exact', at(12))
        store.memory.clear()

        entry = await store.get_coordinates('a.jpg')

        assert entry == CacheEntry('a.jpg', 40.7128, -74.006, 'timeline_exact', 15.0, 0.8, at(12))
        assert 'a.jpg' in store.memory
        assert await store.has_coordinates('a.jpg')
        assert not await store.has_coordinates('b.jpg')

    async def test_durable_tier_survives_reopen(self, tmp_path):
        """Test a second store on the same database sees earlier writes"""
        first = GeolocationStore(db_path=tmp_path / 'geo.db', export_path=None)
        await first.initialize()
        await first.store_coordinates('a.jpg', NYC, 'image_exif')
        await first.close()

        second = GeolocationStore(db_path=tmp_path / 'geo.db', export_path=None)
        await second.initialize()
        try:
            assert (await second.get_coordinates('a.jpg')).source == 'image_exif'
            assert not await second.store_coordinates('a.jpg', NYC, 'timeline_exact')
        finally:
            await second.close()

    async def test_durable_write_failure_keeps_memory(self, store):
        """Test a broken durable tier still updates memory"""
        await store.db.execute('DROP TABLE geolocation')

        assert await store.store_coordinates('a.jpg', NYC, 'timeline_exact')
        assert store.memory['a.jpg'].source == 'timeline_exact'

    async def test_find_by_time_range(self, store):
        """Test matches are limited to the window and ordered by closeness"""
        await store.store_coordinates('a.jpg', NYC, 'timeline_exact', at(12))
        await store.store_coordinates('b.jpg', NYC, 'timeline_exact', at(12, 25))
        await store.store_coordinates('c.jpg', NYC, 'timeline_exact', at(11, 40))
        await store.store_coordinates('d.jpg', NYC, 'timeline_exact', at(14))

        entries = await store.find_by_time_range(at(12, 5), tolerance_minutes=30)

        assert [e.file_id for e in entries] == ['a.jpg', 'b.jpg', 'c.jpg']

    async def test_find_by_time_range_limit(self, store):
        """Test the result limit"""
        for minute in range(5):
            await store.store_coordinates(f'{minute}.jpg', NYC, 'timeline_exact', at(12, minute))

        entries = await store.find_by_time_range(at(12), tolerance_minutes=10, limit=2)

        assert [e.file_id for e in entries] == ['0.jpg', '1.jpg']

    async def test_find_by_proximity(self, store):
        """Test matches within the radius, nearest first"""
        await store.store_coordinates('near.jpg', {'latitude': 40.7200, 'longitude': -74.006}, 'timeline_exact')
        await store.store_coordinates('here.jpg', NYC, 'timeline_exact')
        await store.store_coordinates('far.jpg', {'latitude': 40.8, 'longitude': -74.006}, 'timeline_exact')

        matches = await store.find_by_proximity(40.7128, -74.006, radius_km=1.0)

        assert [entry.file_id for entry, _ in matches] == ['here.jpg', 'near.jpg']
        assert matches[0][1] == pytest.approx(0.0, abs=1e-6)
        assert matches[1][1] == pytest.approx(0.8, abs=0.05)

    async def test_find_by_proximity_across_antimeridian(self, store):
        """Test entries on the other side of the 180th meridian are found"""
        await store.store_coordinates('west.jpg', {'latitude': 10.0, 'longitude': -179.9995}, 'timeline_exact')
        await store.store_coordinates('east.jpg', {'latitude': 10.0, 'longitude': 179.9995}, 'timeline_exact')

        from_east = await store.find_by_proximity(10.0, 179.9995, radius_km=1.0)
        from_west = await store.find_by_proximity(10.0, -179.9995, radius_km=1.0)

        assert [entry.file_id for entry, _ in from_east] == ['east.jpg', 'west.jpg']
        assert [entry.file_id for entry, _ in from_west] == ['west.jpg', 'east.jpg']
        assert from_east[1][1] == pytest.approx(0.11, abs=0.01)

    async def test_remove_and_clear_are_monitored(self, store):
        """Test removal and clearing are timed like every other durable query"""
        await store.store_coordinates('a.jpg', NYC, 'timeline_exact')
        await store.store_coordinates('b.jpg', NYC, 'timeline_exact')

        await store.remove_coordinates('a.jpg')
        await store.clear_all()

        assert store.monitor.query_stats['remove_coordinates'].count == 1
        assert store.monitor.query_stats['clear_all'].count == 1
        async with store.db.execute('SELECT COUNT(*) FROM geolocation') as cursor:
            assert (await cursor.fetchone())[0] == 0

    async def test_remove_and_clear_survive_durable_failure(self, store, caplog):
        """Test durable errors are logged instead of raised"""
        await store.store_coordinates('a.jpg', NYC, 'timeline_exact')
        await store.store_coordinates('b.jpg', NYC, 'timeline_exact')
        await store.db.execute('DROP TABLE geolocation')

        assert await store.remove_coordinates('a.jpg')
        await store.clear_all()

        assert store.memory == {}
        assert 'Failed to remove coordinates for a.jpg' in caplog.text
        assert 'Failed to clear stored coordinates' in caplog.text
        assert store.monitor.query_stats['remove_coordinates'].error_count == 1

    async def test_rows_with_bad_timestamps_are_skipped(self, store, caplog):
        """Test an unreadable stored capture time is reported, not replaced"""
        await store.store_coordinates('good.jpg', NYC, 'timeline_exact', at(12))
        await store.db.execute(
            "INSERT INTO geolocation (file_path, latitude, longitude, source, timestamp) "
            "VALUES ('bad.jpg', 40.7128, -74.006, 'timeline_exact', 'not a date')"
        )

        assert await store.get_coordinates('bad.jpg') is None
        assert 'bad.jpg' not in store.memory
        assert [e.file_id for e in await store.get_all_coordinates()] == ['good.jpg']
        assert 'Skipping stored coordinates for bad.jpg' in caplog.text

    async def test_get_all_and_remove(self, store):
        """Test listing is sorted and removal deletes from both tiers"""
        await store.store_coordinates('b.jpg', NYC, 'timeline_exact')
        await store.store_coordinates('a.jpg', NYC, 'timeline_exact')

        assert [e.file_id for e in await store.get_all_coordinates()] == ['a.jpg', 'b.jpg']
        assert await store.remove_coordinates('a.jpg')
        assert not await store.remove_coordinates('a.jpg')
        assert await store.get_coordinates('a.jpg') is None

    async def test_clear_all(self, store):
        """Test clearing empties both tiers"""
        await store.store_coordinates('a.jpg', NYC, 'timeline_exact')
        await store.clear_all()

        assert await store.get_all_coordinates() == []

    async def test_export_and_reload(self, store, tmp_path):
        """Test the JSON export round-trips into a fresh memory-only store"""
        await store.store_coordinates('a.jpg', {**NYC, 'accuracy': 10.0, 'confidence': 0.9}, 'image_exif', at(12))
        await store.store_coordinates('b.jpg', NYC, 'nearby_images', at(13))

        path = await store.export_database()

        with open(path) as f:
            exported = json.load(f)
        assert exported[0] == {
            'filePath': 'a.jpg',
            'latitude': 40.7128,
            'longitude': -74.006,
            'source': 'image_exif',
            'accuracy': 10.0,
            'confidence': 0.9,
            'timestamp': '2024-01-15T12:00:00.000Z',
        }

        reloaded = GeolocationStore(export_path=path, enable_sqlite=False)
        await reloaded.initialize()
        assert (await reloaded.get_coordinates('b.jpg')).timestamp == at(13)
        assert len(reloaded.memory) == 2

    async def test_load_export_skips_bad_input(self, tmp_path):
        """Test corrupt files and invalid entries load nothing"""
        corrupt = tmp_path / 'corrupt.json'
        corrupt.write_text('{not json')
        partial = tmp_path / 'partial.json'
        partial.write_text(json.dumps([{'filePath': 'a.jpg', 'latitude': 0, 'longitude': 0}, {'latitude': 1, 'longitude': 1}]))

        store = GeolocationStore(export_path=None, enable_sqlite=False)

        assert await store.load_export(corrupt) == 0
        assert await store.load_export(partial) == 0
        assert await store.load_export(tmp_path / 'missing.json') == 0

    async def test_load_export_skips_bad_timestamps(self, tmp_path, caplog):
        """Test exported entries without a readable capture time are not loaded"""
        path = tmp_path / 'export.json'
        path.write_text(
            json.dumps(
                [
                    {**NYC, 'filePath': 'a.jpg', 'source': 'image_exif', 'timestamp': '2024-01-15T12:00:00.000Z'},
                    {**NYC, 'filePath': 'b.jpg', 'source': 'image_exif', 'timestamp': 'garbage'},
                    {**NYC, 'filePath': 'c.jpg', 'source': 'image_exif'},
                ]
            )
        )
        store = GeolocationStore(export_path=None, enable_sqlite=False)

        assert await store.load_export(path) == 1
        assert list(store.memory) == ['a.jpg']
        assert 'Skipping exported coordinates for b.jpg' in caplog.text

    async def test_statistics(self, store):
        """Test totals, source counts and accuracy summaries"""
        await store.store_coordinates('a.jpg', {**NYC, 'accuracy': 10.0}, 'image_exif')
        await store.store_coordinates('b.jpg', {**NYC, 'accuracy': 30.0}, 'timeline_exact')
        await store.store_coordinates('c.jpg', NYC, 'timeline_exact')

        stats = await store.get_statistics()

        assert stats['total_records'] == 3
        assert stats['sqlite_enabled']
        assert stats['sources'] == {'image_exif': 1, 'timeline_exact': 2}
        assert stats['accuracy']['count'] == 2
        assert stats['accuracy']['mean'] == 20.0
        assert stats['confidence']['count'] == 0

    async def test_maintenance(self, store):
        """Test maintenance runs once per interval"""
        assert await store.run_maintenance() == 0
        assert store.last_maintenance is not None
        assert not await store.run_maintenance_if_due()

    async def test_failed_migration_closes_connection(self, tmp_path, monkeypatch):
        """Test initialization surfaces migration failures and leaves no open connection"""

        class FailingRunner:
            def __init__(self, db):
                self.db = db

            async def run(self):
                raise MigrationError(2, 'comprehensive_index_optimization', RuntimeError('boom'))

        monkeypatch.setattr('core.store.MigrationRunner', FailingRunner)
        store = GeolocationStore(db_path=tmp_path / 'geo.db', export_path=None)

        with pytest.raises(MigrationError):
            await store.initialize()

        assert store.db is None
        assert not store.sqlite_enabled


class TestMemoryOnlyStore:
    """Test suite for the store with SQLite disabled"""

    @pytest.fixture
    async def store(self):
        store = GeolocationStore(export_path=None, enable_sqlite=False)
        await store.initialize()
        return store

    async def test_priority_rules_apply(self, store):
        """Test arbitration works without a durable tier"""
        assert await store.store_coordinates('a.jpg', NYC, 'nearby_images')
        assert not await store.store_coordinates('a.jpg', NYC, 'spatial_interpolation')
        assert await store.store_coordinates('a.jpg', NYC, 'image_exif')
        assert not store.sqlite_enabled

    async def test_queries_fall_back_to_memory(self, store):
        """Test time and proximity searches scan the memory tier"""
        await store.store_coordinates('a.jpg', NYC, 'timeline_exact', at(12))
        await store.store_coordinates('b.jpg', {'latitude': 41.0, 'longitude': -74.0}, 'timeline_exact', at(12, 10))

        assert [e.file_id for e in await store.find_by_time_range(at(12, 1), 15)] == ['a.jpg', 'b.jpg']
        assert [e.file_id for e, _ in await store.find_by_proximity(40.7128, -74.006, 1.0)] == ['a.jpg']

    async def test_maintenance_is_noop(self, store):
        """Test maintenance needs a database"""
        assert await store.run_maintenance() == 0
        assert not await store.run_maintenance_if_due()
