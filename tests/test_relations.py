from asyncio import run
from context import RecordingDatabase, classes, interfaces, relations
import unittest


class User(classes.Model):
    @classes.relation
    def posts(self):
        return self.has_many(Post)

    @classes.relation
    def profile(self):
        return self.has_one(Profile)


class Post(classes.Model):
    @classes.relation
    def user(self):
        return self.belongs_to(User)

    @classes.relation
    def tags(self):
        return self.belongs_to_many(Tag).with_pivot('weight')


class Profile(classes.Model):
    ...


class Tag(classes.Model):
    ...


class Audited(classes.Model):
    touched = []

    def purge(self):
        Audited.touched.append(self)
        return self.has_many(Post)

    async def archive(self):
        Audited.touched.append(self)


class TestRelations(unittest.TestCase):
    db: RecordingDatabase

    def setUp(self) -> None:
        self.db = RecordingDatabase()
        for model in (User, Post, Profile, Tag, Audited):
            model.database = self.db

    def tearDown(self) -> None:
        for model in (User, Post, Profile, Tag, Audited):
            model.database = None

    def test_relations_implement_RelationProtocol(self):
        user = User.new_from_row({'id': 1})
        post = Post.new_from_row({'id': 1, 'user_id': 1})
        for relation in (user.posts(), user.profile(), post.user(), post.tags()):
            assert isinstance(relation, interfaces.RelationProtocol)

    def test_relation_requires_model_types(self):
        with self.assertRaises(TypeError):
            relations.HasMany(dict, User(), 'user_id', 'id')
        with self.assertRaises(TypeError):
            relations.HasMany(Post, {}, 'user_id', 'id')

    def test_construction_does_not_constrain(self):
        relation = relations.HasMany(Post, User.new_from_row({'id': 1}), 'user_id', 'id')
        assert relation.query.to_sql() == 'SELECT * FROM posts'
        relation.add_constraints()
        relation.add_constraints()
        assert relation.query.build_query() == ('SELECT * FROM posts WHERE user_id = ?', [1])

    def test_default_key_names(self):
        relation = User.new_from_row({'id': 1}).posts()
        assert relation.foreign_key == 'user_id'
        assert relation.local_key == 'id'
        relation = Post.new_from_row({'id': 1}).tags()
        assert relation.pivot_table == 'post_tag'
        assert relation.foreign_pivot_key == 'post_id'
        assert relation.related_pivot_key == 'tag_id'

    def test_has_many_get_results(self):
        self.db.select_results = [[{'id': 1, 'user_id': 5}, {'id': 2, 'user_id': 5}]]
        posts = run(User.new_from_row({'id': 5}).posts().order_by('id').get_results())
        assert len(posts) == 2
        assert self.db.calls == [
            ('select', 'SELECT * FROM posts WHERE user_id = ? ORDER BY id asc', [5])
        ]

    def test_has_one_get_results(self):
        self.db.select_results = [[{'id': 3, 'user_id': 5}]]
        profile = run(User.new_from_row({'id': 5}).profile().get_results())
        assert profile.get_key() == 3
        assert self.db.calls[0][1] == 'SELECT * FROM profiles WHERE user_id = ? LIMIT ?'

    def test_belongs_to_null_guard_issues_no_query(self):
        post = Post({'title': 'x'})
        assert run(post.user().get_results()) is None
        assert self.db.calls == []

    def test_belongs_to_get_results(self):
        self.db.select_results = [[{'id': 8}]]
        post = Post.new_from_row({'id': 1, 'user_id': 8})
        assert run(post.user().get_results()).get_key() == 8
        assert self.db.calls[0][1:] == ('SELECT * FROM users WHERE id = ? LIMIT ?', [8, 1])

    def test_eager_load_has_many_uses_one_query(self):
        self.db.select_results = [
            [{'id': 1}, {'id': 2}, {'id': 3}],
            [
                {'id': 10, 'user_id': 1}, {'id': 11, 'user_id': 2},
                {'id': 12, 'user_id': 1}, {'id': 13, 'user_id': '2'},
            ],
        ]
        users = run(User.with_('posts').get())

        assert len(self.db.calls) == 2
        assert self.db.calls[1] == (
            'select', 'SELECT * FROM posts WHERE user_id IN (?, ?, ?)', [1, 2, 3]
        )
        by_id = users.key_by('id')
        assert [p.get_key() for p in by_id['1'].get_relation('posts')] == [10, 12]
        assert [p.get_key() for p in by_id['2'].get_relation('posts')] == [11, 13]
        assert by_id['3'].get_relation('posts').is_empty()
        assert by_id['3'].relation_loaded('posts')

    def test_eager_load_has_one(self):
        self.db.select_results = [
            [{'id': 1}, {'id': 2}],
            [{'id': 7, 'user_id': 2}],
        ]
        users = run(User.with_('profile').get())
        assert users[0].get_relation('profile') is None
        assert users[1].get_relation('profile').get_key() == 7

    def test_eager_load_belongs_to_skips_null_keys(self):
        self.db.select_results = [
            [{'id': 1, 'user_id': 4}, {'id': 2, 'user_id': None}, {'id': 3, 'user_id': 4}],
            [{'id': 4}],
        ]
        posts = run(Post.with_('user').get())
        assert self.db.calls[1][1:] == ('SELECT * FROM users WHERE id IN (?)', [4])
        assert posts[0].get_relation('user') is posts[2].get_relation('user')
        assert posts[1].get_relation('user') is None
        assert posts[1].relation_loaded('user')

    def test_eager_load_belongs_to_without_keys_issues_no_query(self):
        self.db.select_results = [[{'id': 1, 'user_id': None}]]
        posts = run(Post.with_('user').get())
        assert len(self.db.calls) == 1
        assert posts[0].get_relation('user') is None

    def test_nested_eager_load(self):
        self.db.select_results = [
            [{'id': 1}],
            [{'id': 10, 'user_id': 1}],
            [{'id': 20, 'tag_id': 20, 'pivot_post_id': 10, 'pivot_tag_id': 20, 'pivot_weight': 3}],
        ]
        users = run(User.with_('posts.tags').get())
        assert len(self.db.calls) == 3
        assert self.db.calls[2][1] == (
            'SELECT tags.*, post_tag.post_id AS pivot_post_id, post_tag.tag_id AS pivot_tag_id, '
            'post_tag.weight AS pivot_weight FROM tags '
            'INNER JOIN post_tag ON tags.id = post_tag.tag_id WHERE post_tag.post_id IN (?)'
        )
        tag = users[0].get_relation('posts')[0].get_relation('tags')[0]
        assert tag.pivot == {'post_id': 10, 'tag_id': 20, 'weight': 3}
        assert 'pivot_weight' not in tag
        assert not tag.is_dirty()

    def test_eager_paths_sharing_a_relation_load_it_once(self):
        self.db.select_results = [
            [{'id': 1}],
            [{'id': 10, 'user_id': 1}],
            [{'id': 20, 'pivot_post_id': 10, 'pivot_tag_id': 20, 'pivot_weight': None}],
            [{'id': 1}],
        ]
        users = run(User.with_('posts.tags', 'posts.user').get())
        assert len(self.db.calls) == 4
        assert len([c for c in self.db.calls if 'FROM posts' in c[1]]) == 1

        post = users[0].get_relation('posts')[0]
        assert post.relation_loaded('tags')
        assert post.relation_loaded('user')
        assert post.get_relation('tags')[0].get_key() == 20
        assert post.get_relation('user').get_key() == 1

    def test_eager_loading_only_calls_marked_relations(self):
        assert User.config().relations == {'posts', 'profile'}
        assert Post.config().relations == {'user', 'tags'}
        assert Audited.config().relations == set()

        Audited.touched.clear()
        self.db.select_results = [[{'id': 1}]]
        with self.assertLogs('teloquent.classes', level='WARNING') as logs:
            results = run(Audited.with_('purge', 'archive').get())
        assert Audited.touched == []
        assert len(self.db.calls) == 1
        assert len(logs.output) == 2
        assert not results[0].relation_loaded('purge')

    def test_model_load(self):
        self.db.select_results = [[{'id': 10, 'user_id': 1}]]
        user = User.new_from_row({'id': 1})
        run(user.load('posts'))
        assert len(user.get_relation('posts')) == 1
        assert user.to_json() == {'id': 1, 'posts': [{'id': 10, 'user_id': 1}]}

    def test_belongs_to_many_get_results(self):
        self.db.select_results = [[
            {'id': 2, 'name': 'a', 'pivot_post_id': 1, 'pivot_tag_id': 2, 'pivot_weight': None},
        ]]
        tags = run(Post.new_from_row({'id': 1}).tags().get_results())
        sql, params = self.db.calls[0][1:]
        assert sql == (
            'SELECT tags.*, post_tag.post_id AS pivot_post_id, post_tag.tag_id AS pivot_tag_id, '
            'post_tag.weight AS pivot_weight FROM tags '
            'INNER JOIN post_tag ON tags.id = post_tag.tag_id WHERE post_tag.post_id = ?'
        )
        assert params == [1]
        assert tags[0].attributes == {'id': 2, 'name': 'a'}
        assert tags[0].pivot == {'post_id': 1, 'tag_id': 2, 'weight': None}
        assert tags[0].to_json()['pivot'] == {'post_id': 1, 'tag_id': 2, 'weight': None}

    def test_with_pivot_is_additive(self):
        relation = Post.new_from_row({'id': 1}).tags().with_pivot('weight', 'note')
        assert relation.pivot_columns == ['post_id', 'tag_id', 'weight', 'weight', 'note']
        assert relation.selected_pivot_columns() == ['post_id', 'tag_id', 'weight', 'note']

        self.db.select_results = [[{
            'id': 2, 'pivot_post_id': 1, 'pivot_tag_id': 2,
            'pivot_weight': 4, 'pivot_note': 'n',
        }]]
        tags = run(relation.get_results())
        assert self.db.calls[0][1].count('AS pivot_weight') == 1
        assert tags[0].pivot == {'post_id': 1, 'tag_id': 2, 'weight': 4, 'note': 'n'}

    def test_convert_to_ids(self):
        relation = Post.new_from_row({'id': 1}).tags()
        assert relation.convert_to_ids(3) == [3]
        assert relation.convert_to_ids([1, Tag.new_from_row({'id': 2})]) == [1, 2]
        assert relation.convert_to_ids(classes.Collection([Tag.new_from_row({'id': 4})])) == [4]

    def test_attach_and_detach(self):
        relation = Post.new_from_row({'id': 1}).tags()
        run(relation.attach([2, 3], {'weight': 5}))
        assert self.db.calls_to('insert') == [
            ('insert', 'post_tag', {'post_id': 1, 'tag_id': 2, 'weight': 5}),
            ('insert', 'post_tag', {'post_id': 1, 'tag_id': 3, 'weight': 5}),
        ]

        run(relation.detach(2))
        run(relation.detach())
        assert run(relation.detach([])) == 0
        assert self.db.calls_to('delete') == [
            ('delete', 'post_tag', 'post_id = ? AND tag_id IN (?)', [1, 2]),
            ('delete', 'post_tag', 'post_id = ?', [1]),
        ]

    def test_sync_runs_in_a_transaction(self):
        relation = Post.new_from_row({'id': 1}).tags()
        run(relation.sync([2, 3]))
        assert self.db.transactions == 1
        assert [c[0] for c in self.db.calls] == ['delete', 'insert', 'insert']

    def test_update_existing_pivot(self):
        relation = Post.new_from_row({'id': 1}).tags()
        run(relation.update_existing_pivot(Tag.new_from_row({'id': 2}), {'weight': 9}))
        assert self.db.calls == [
            ('update', 'post_tag', {'weight': 9}, 'post_id = ? AND tag_id = ?', [1, 2])
        ]

    def test_has_many_create_and_save(self):
        self.db.insert_id = 30
        user = User.new_from_row({'id': 5})
        post = run(user.posts().create({'title': 'x'}))
        assert post.exists
        assert post.get_key() == 30
        assert self.db.calls_to('insert')[0][2]['user_id'] == 5

        other = Post.new_from_row({'id': 31, 'user_id': 9})
        run(user.posts().save(other))
        assert self.db.calls_to('update')[0][2]['user_id'] == 5

    def test_has_many_save_many(self):
        user = User.new_from_row({'id': 5})
        posts = [Post({'title': 'a'}), Post({'title': 'b'})]
        saved = run(user.posts().save_many(posts))
        assert saved == posts
        assert [c[2]['user_id'] for c in self.db.calls_to('insert')] == [5, 5]

    def test_associate_and_dissociate(self):
        post = Post.new_from_row({'id': 1, 'user_id': None})
        run(post.user().associate(User.new_from_row({'id': 4})))
        assert post['user_id'] == 4
        run(post.user().dissociate())
        assert post['user_id'] is None
        updates = self.db.calls_to('update')
        assert updates[0][2]['user_id'] == 4
        assert updates[1][2]['user_id'] is None


if __name__ == '__main__':
    unittest.main()
