from asyncio import run
from context import RecordingDatabase, classes, database, errors, interfaces
import unittest


class Thing(classes.Model):
    table = 't'


class Widget(classes.Model):
    timestamps = False


class TestQueryBuilder(unittest.TestCase):
    db: RecordingDatabase

    def setUp(self) -> None:
        self.db = RecordingDatabase()
        Thing.database = self.db
        Widget.database = self.db

    def tearDown(self) -> None:
        Thing.database = None
        Widget.database = None
        database.Teloquent.reset()

    def test_QueryBuilder_implements_QueryBuilderProtocol(self):
        assert isinstance(Thing.query(), interfaces.QueryBuilderProtocol)

    def test_QueryBuilder_rejects_non_model_class(self):
        with self.assertRaises(TypeError) as e:
            classes.QueryBuilder(dict)
        assert str(e.exception) == 'model must be subclass of Model'

    def test_table_defaults_to_model_table(self):
        assert Thing.query().table == 't'
        assert Widget.query().table == 'widgets'
        assert classes.QueryBuilder(Thing, 'other').table == 'other'

    def test_build_query_without_clauses(self):
        assert Thing.query().build_query() == ('SELECT * FROM t', [])

    def test_where_chain_renders_in_order_with_params(self):
        sql, params = Thing.query().where('a', 1).where('b', '>', 2).or_where('c', 3).build_query()
        assert sql == 'SELECT * FROM t WHERE a = ? AND b > ? OR c = ?'
        assert params == [1, 2, 3]

    def test_where_operator_is_case_insensitive(self):
        sql, params = Thing.query().where('name', 'like', '%a%').build_query()
        assert sql == 'SELECT * FROM t WHERE name LIKE ?'
        assert params == ['%a%']

    def test_where_in_expands_one_placeholder_per_value(self):
        sql, params = Thing.query().where_in('id', [1, 2, 3]).build_query()
        assert sql == 'SELECT * FROM t WHERE id IN (?, ?, ?)'
        assert params == [1, 2, 3]

    def test_where_not_in(self):
        sql, params = Thing.query().where_not_in('id', (4, 5)).build_query()
        assert sql == 'SELECT * FROM t WHERE id NOT IN (?, ?)'
        assert params == [4, 5]

    def test_where_null_binds_no_params(self):
        sql, params = Thing.query().where_null('a').or_where_null('b').where_not_null('c').build_query()
        assert sql == 'SELECT * FROM t WHERE a IS NULL OR b IS NULL AND c IS NOT NULL'
        assert params == []

    def test_where_between(self):
        sql, params = Thing.query().where_between('n', [1, 10]).where_not_between('m', (2, 3)).build_query()
        assert sql == 'SELECT * FROM t WHERE n BETWEEN ? AND ? AND m NOT BETWEEN ? AND ?'
        assert params == [1, 10, 2, 3]

        with self.assertRaises(ValueError):
            Thing.query().where_between('n', [1])

    def test_or_where_in(self):
        sql, params = Thing.query().where('a', 1).or_where_in('b', [2, 3]).build_query()
        assert sql == 'SELECT * FROM t WHERE a = ? OR b IN (?, ?)'
        assert params == [1, 2, 3]

    def test_select_joins_group_having_order_limit_offset(self):
        sql, params = (
            Thing.query()
            .select('t.kind', 'COUNT(*) AS total')
            .join('u', 't.u_id', '=', 'u.id')
            .left_join('v', 't.v_id', '=', 'v.id')
            .where('u.active', 1)
            .group_by('t.kind')
            .having('total', '>', 2)
            .order_by('total', 'DESC')
            .order_by('t.kind')
            .limit(5)
            .offset(10)
            .build_query()
        )
        assert sql == 'SELECT t.kind, COUNT(*) AS total FROM t ' + \
            'INNER JOIN u ON t.u_id = u.id LEFT JOIN v ON t.v_id = v.id ' + \
            'WHERE u.active = ? GROUP BY t.kind HAVING total > ? ' + \
            'ORDER BY total desc, t.kind asc LIMIT ? OFFSET ?'
        assert params == [1, 2, 5, 10]

    def test_offset_is_ignored_without_limit(self):
        sql, params = Thing.query().offset(3).build_query()
        assert sql == 'SELECT * FROM t'
        assert params == []

    def test_invalid_order_and_join_kind_raise(self):
        with self.assertRaises(ValueError):
            Thing.query().order_by('a', 'sideways')
        with self.assertRaises(ValueError):
            Thing.query().join('u', 'a', '=', 'b', 'outer')
        with self.assertRaises(TypeError):
            Thing.query().limit('5')

    def test_build_where_clause_defaults_to_unconditional(self):
        assert Thing.query().build_where_clause() == ('1=1', [])
        assert Thing.query().where('a', 1).or_where('b', 2).build_where_clause() == \
            ('a = ? OR b = ?', [1, 2])

    def test_to_sql_and_get_bindings(self):
        query = Thing.query().where('a', 1)
        assert query.to_sql() == 'SELECT * FROM t WHERE a = ?'
        assert query.get_bindings() == [1]

    def test_clone_is_independent(self):
        query = Thing.query().where('a', 1)
        clone = query.clone().where('b', 2)
        assert query.to_sql() == 'SELECT * FROM t WHERE a = ?'
        assert clone.to_sql() == 'SELECT * FROM t WHERE a = ? AND b = ?'

    def test_get_hydrates_clean_existing_models(self):
        self.db.select_results = [[{'id': 1, 'name': 'a'}, {'id': 2, 'name': 'b'}]]
        results = run(Thing.query().get())
        assert isinstance(results, classes.Collection)
        assert len(results) == 2
        first = results.first()
        assert isinstance(first, Thing)
        assert first.exists
        assert not first.is_dirty()
        assert first.get_attribute('name') == 'a'
        assert first.original == first.attributes
        assert first.original is not first.attributes

    def test_first_restores_previous_limit(self):
        query = Thing.query().limit(10)
        self.db.select_results = [[{'id': 1}]]
        model = run(query.first())
        assert model.get_key() == 1
        assert self.db.calls[0][1] == 'SELECT * FROM t LIMIT ?'
        assert self.db.calls[0][2] == [1]
        assert query.limit_value == 10

    def test_first_returns_None_when_nothing_matches(self):
        assert run(Thing.query().first()) is None

    def test_first_or_fail_raises_ModelNotFoundError(self):
        with self.assertRaises(errors.ModelNotFoundError) as e:
            run(Thing.query().where('a', 1).first_or_fail())
        assert e.exception.model == 'Thing'

    def test_find_adds_primary_key_condition(self):
        self.db.select_results = [[{'id': 7}]]
        model = run(Thing.query().find(7))
        assert model.get_key() == 7
        assert self.db.calls == [('select', 'SELECT * FROM t WHERE id = ? LIMIT ?', [7, 1])]

    def test_count_overrides_select_list_without_mutating_it(self):
        self.db.select_results = [[{'aggregate': 3}]]
        query = Thing.query().select('name').where('a', 1).order_by('name').limit(2)
        assert run(query.count()) == 3
        assert self.db.calls[0][1] == 'SELECT COUNT(*) AS aggregate FROM t WHERE a = ?'
        assert self.db.calls[0][2] == [1]
        assert query.columns == ['name']

    def test_count_returns_zero_without_rows(self):
        assert run(Thing.query().count('id')) == 0
        assert self.db.calls[0][1] == 'SELECT COUNT(id) AS aggregate FROM t'

    def test_exists(self):
        self.db.select_results = [[{'aggregate': 0}], [{'aggregate': 2}]]
        assert not run(Thing.query().exists())
        assert run(Thing.query().exists())

    def test_pluck(self):
        self.db.select_results = [[{'id': 1, 'name': 'a'}, {'id': 2, 'name': 'b'}]]
        assert run(Thing.query().pluck('name')) == ['a', 'b']

    def test_update_and_delete_use_where_clause(self):
        self.db.rowcount = 4
        assert run(Thing.query().where('a', 1).update({'b': 2})) == 4
        assert run(Thing.query().delete()) == 4
        assert self.db.calls == [
            ('update', 't', {'b': 2}, 'a = ?', [1]),
            ('delete', 't', '1=1', []),
        ]

    def test_insert_returns_insert_id(self):
        self.db.insert_id = 42
        assert run(Thing.query().insert({'a': 1})) == 42
        assert self.db.calls == [('insert', 't', {'a': 1})]

    def test_database_resolution_falls_back_to_default(self):
        Thing.database = None
        with self.assertRaises(errors.ConfigurationError):
            run(Thing.query().get())

        fallback = RecordingDatabase()
        database.Teloquent.initialize(database=fallback)
        run(Thing.query().get())
        assert len(fallback.calls) == 1

    def test_explicit_database_wins(self):
        other = RecordingDatabase()
        run(classes.QueryBuilder(Thing, database=other).get())
        assert len(other.calls) == 1
        assert len(self.db.calls) == 0

    def test_unknown_eager_relation_is_skipped_with_warning(self):
        self.db.select_results = [[{'id': 1}]]
        with self.assertLogs('teloquent.classes', level='WARNING') as logs:
            results = run(Thing.query().with_('nope').get())
        assert len(results) == 1
        assert 'nope' in logs.output[0]
        assert len(self.db.calls) == 1


if __name__ == '__main__':
    unittest.main()
