"""
Tests for the public explore feed: listing, reactions, comments and forks.
"""
import app as app_module
from conftest import NOW, make_material_row

CONTENT_EXISTS = "SELECT id FROM explore_contents WHERE id = %s"


def explore_row(id=5, title="Cells", likes=3, liked=False):
    return (id, title, "Intro", "text", 12, 1, NOW, NOW, 10, 2, "Grace", None, likes, 0, 4, liked, False)


class TestFeed:
    def test_list_filters_and_sorts(self, client, db, auth_headers):
        db.on("FROM explore_contents e JOIN users u", [explore_row(liked=True)])
        resp = client.get("/api/explore?query=cell&sort=popular&userId=2", headers=auth_headers())
        [item] = resp.get_json()["materials"]
        assert item["user"] == {"id": 2, "name": "Grace", "image": None}
        assert item["likeCount"] == 3
        assert item["isLiked"] is True
        assert item["forkCount"] == 1
        sql, params = db.queries("FROM explore_contents e JOIN users u")[0]
        assert "ORDER BY like_count DESC" in sql
        assert "LIMIT 50" in sql
        assert params == (1, 1, 2, "%cell%", "%cell%")

    def test_default_order_is_newest(self, client, db, auth_headers):
        client.get("/api/explore", headers=auth_headers())
        sql, params = db.queries("FROM explore_contents e JOIN users u")[0]
        assert "ORDER BY e.created_at DESC" in sql
        assert "WHERE e." not in sql
        assert params == (1, 1)

    def test_detail_counts_view(self, client, db, auth_headers):
        db.on("FROM explore_contents e JOIN users u", [explore_row() + ("Full text",)])
        resp = client.get("/api/explore/5", headers=auth_headers())
        assert resp.get_json()["material"]["content"] == "Full text"
        assert db.queries("SET views = views + 1")[0][1] == (5,)

    def test_detail_missing(self, client, db, auth_headers):
        assert client.get("/api/explore/5", headers=auth_headers()).status_code == 404


class TestReactions:
    def test_like_clears_dislike(self, client, db, auth_headers):
        db.on(CONTENT_EXISTS, [(5,)])
        resp = client.post("/api/explore/5/like", headers=auth_headers())
        assert resp.get_json() == {"success": True, "liked": True}
        assert db.queries("DELETE FROM explore_dislikes")[0][1] == (1, 5)
        assert db.queries("INSERT INTO explore_likes")

    def test_second_like_removes_it(self, client, db, auth_headers):
        db.on(CONTENT_EXISTS, [(5,)])
        db.on("DELETE FROM explore_likes", [(9,)])
        resp = client.post("/api/explore/5/like", headers=auth_headers())
        assert resp.get_json()["liked"] is False
        assert db.queries("INSERT INTO explore_likes") == []

    def test_dislike(self, client, db, auth_headers):
        db.on(CONTENT_EXISTS, [(5,)])
        resp = client.post("/api/explore/5/dislike", headers=auth_headers())
        assert resp.get_json()["disliked"] is True
        assert db.queries("DELETE FROM explore_likes")

    def test_unknown_content(self, client, db, auth_headers):
        assert client.post("/api/explore/5/like", headers=auth_headers()).status_code == 404


class TestComments:
    def test_build_comment_tree(self):
        comments = [
            {"id": 1, "parentId": None, "content": "first"},
            {"id": 2, "parentId": 1, "content": "reply a"},
            {"id": 3, "parentId": None, "content": "second"},
            {"id": 4, "parentId": 1, "content": "reply b"},
        ]
        tree = app_module.build_comment_tree(comments)
        assert [c["id"] for c in tree] == [3, 1]
        assert [r["content"] for r in tree[1]["replies"]] == ["reply a", "reply b"]

    def test_list_comments(self, client, db, auth_headers):
        db.on("FROM explore_comments c JOIN users u", [
            (1, "Nice", None, NOW, NOW, 2, "Grace", None),
            (2, "Thanks", 1, NOW, NOW, 1, "Ada", None),
        ])
        [root] = client.get("/api/explore/5/comments", headers=auth_headers()).get_json()["comments"]
        assert root["user"]["name"] == "Grace"
        assert root["replies"][0]["content"] == "Thanks"

    def test_empty_comment(self, client, db, auth_headers):
        resp = client.post("/api/explore/5/comments", json={"content": "  "}, headers=auth_headers())
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Comment cannot be empty"

    def test_reply_to_comment_on_other_content(self, client, db, auth_headers):
        db.on(CONTENT_EXISTS, [(5,)])
        db.on("SELECT explore_content_id FROM explore_comments", [(6,)])
        resp = client.post("/api/explore/5/comments", json={"content": "Hi", "parentId": 1}, headers=auth_headers())
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Parent comment not found"

    def test_add_comment(self, client, db, auth_headers):
        db.on(CONTENT_EXISTS, [(5,)])
        db.on("INSERT INTO explore_comments", lambda p: [(8, p[3], p[2], NOW, NOW)])
        resp = client.post("/api/explore/5/comments", json={"content": " Great notes "}, headers=auth_headers())
        assert resp.status_code == 201
        comment = resp.get_json()["comment"]
        assert comment["content"] == "Great notes"
        assert comment["user"]["name"] == "Ada"
        assert comment["replies"] == []

    def test_empty_parent_id_is_top_level(self, client, db, auth_headers):
        db.on(CONTENT_EXISTS, [(5,)])
        db.on("INSERT INTO explore_comments", lambda p: [(8, p[3], p[2], NOW, NOW)])
        resp = client.post("/api/explore/5/comments", json={"content": "Hi", "parentId": ""}, headers=auth_headers())
        assert resp.status_code == 201
        assert resp.get_json()["comment"]["parentId"] is None
        assert db.queries("SELECT explore_content_id FROM explore_comments") == []
        assert db.queries("INSERT INTO explore_comments")[0][1][2] is None

    def test_reply_with_string_parent_id(self, client, db, auth_headers):
        db.on(CONTENT_EXISTS, [(5,)])
        db.on("SELECT explore_content_id FROM explore_comments", [(5,)])
        db.on("INSERT INTO explore_comments", lambda p: [(8, p[3], p[2], NOW, NOW)])
        resp = client.post("/api/explore/5/comments", json={"content": "Hi", "parentId": "3"}, headers=auth_headers())
        assert resp.status_code == 201
        assert db.queries("INSERT INTO explore_comments")[0][1][2] == 3

    def test_unparseable_parent_id(self, client, db, auth_headers):
        resp = client.post("/api/explore/5/comments", json={"content": "Hi", "parentId": "abc"}, headers=auth_headers())
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid parent comment"
        assert db.queries("INSERT INTO explore_comments") == []

    def test_delete_others_comment_is_forbidden(self, client, db, auth_headers):
        db.on("SELECT user_id FROM explore_comments", [(2,)])
        resp = client.delete("/api/explore/comments/8", headers=auth_headers())
        assert resp.status_code == 403
        assert db.queries("DELETE FROM explore_comments") == []

    def test_delete_own_comment(self, client, db, auth_headers):
        db.on("SELECT user_id FROM explore_comments", [(1,)])
        resp = client.delete("/api/explore/comments/8", headers=auth_headers())
        assert resp.get_json()["message"] == "Comment deleted"


class TestFork:
    def test_fork_copies_into_materials(self, client, db, auth_headers):
        db.on("original_material_id FROM explore_contents", [("Cells", None, "Cells are units.", "text", 10)])
        db.on("INSERT INTO materials", lambda p: [make_material_row(id=30, title=p[1], content=p[3])])
        resp = client.post("/api/explore/5/fork", headers=auth_headers())
        material = resp.get_json()["material"]
        assert material["title"] == "Cells (Fork)"
        assert db.queries("INSERT INTO materials")[0][1][-1] == 10
        assert db.queries("SET forks_count = forks_count + 1")

    def test_fork_missing(self, client, db, auth_headers):
        assert client.post("/api/explore/5/fork", headers=auth_headers()).status_code == 404
