import logging

import pytest
from pytest_django import DjangoAssertNumQueries
from pytest_django.fixtures import SettingsWrapper

from bookstore.models import Book, Review
from django_relation_builder import InvalidQuery
from tests.test_project.factories import BookFactory, ReviewFactory

pytestmark = pytest.mark.django_db


class TestBatches:
    def test_find_in_batches(self):
        books = BookFactory.create_batch(5)

        batches = list(Book.relation.find_in_batches(batch_size=2))

        assert [len(batch) for batch in batches] == [2, 2, 1]
        assert [book.pk for batch in batches for book in batch] == [book.pk for book in books]

    def test_find_each_with_bounds(self):
        books = BookFactory.create_batch(5)

        found = Book.relation.find_each(batch_size=2, start=books[1].pk, finish=books[3].pk)

        assert [book.pk for book in found] == [book.pk for book in books[1:4]]

    def test_conditions_and_default_scope_apply(self):
        expected = BookFactory(out_of_print=True)
        BookFactory(out_of_print=False)
        BookFactory(out_of_print=True, year_published=1900)

        assert [book.pk for book in Book.relation.out_of_print().find_each()] == [expected.pk]

    def test_restartable(self):
        BookFactory.create_batch(3)
        batches = Book.relation.find_in_batches(batch_size=2)

        assert [len(batch) for batch in batches] == [2, 1]
        assert [len(batch) for batch in batches] == [2, 1]

    def test_none(self, django_assert_num_queries: DjangoAssertNumQueries):
        with django_assert_num_queries(0):
            assert list(Book.relation.none().find_each()) == []

    def test_includes_are_memoized_between_batches(self, django_assert_num_queries: DjangoAssertNumQueries):
        book = BookFactory()
        ReviewFactory.create_batch(4, book=book)
        batches = iter(Review.relation.includes("book").find_in_batches(batch_size=2))

        with django_assert_num_queries(2):
            first = next(batches)
        with django_assert_num_queries(1):
            second = next(batches)

        assert first[0].book is second[0].book
        assert first[0].book.pk == book.pk

    def test_ignored_order_warns(self, caplog: pytest.LogCaptureFixture):
        BookFactory.create_batch(2)

        with caplog.at_level(logging.WARNING, logger="django_relation_builder._batches"):
            books = list(Book.relation.order("-title").find_each())

        assert len(books) == 2
        assert "Scoped order is ignored" in caplog.text

    def test_ignored_order_can_raise(self, settings: SettingsWrapper):
        settings.RELATION_BUILDER = {"ERROR_ON_IGNORED_ORDER": True}

        with pytest.raises(InvalidQuery, match="Scoped order is ignored"):
            Book.relation.order("-title").find_each()

    def test_default_batch_size_from_settings(self, settings: SettingsWrapper):
        settings.RELATION_BUILDER = {"BATCH_SIZE": 2}
        BookFactory.create_batch(3)

        assert [len(batch) for batch in Book.relation.find_in_batches()] == [2, 1]

    @pytest.mark.parametrize(
        ("relation", "message"),
        [
            (lambda: Book.relation.limit(10), "limit or offset"),
            (lambda: Book.relation.offset(10), "limit or offset"),
            (lambda: Book.relation.group("title"), "grouped relation"),
        ],
    )
    def test_invalid_relations(self, relation, message: str):
        with pytest.raises(InvalidQuery, match=message):
            relation().find_each()

    def test_invalid_batch_size(self):
        with pytest.raises(InvalidQuery, match="batch_size has to be a positive integer"):
            Book.relation.find_each(batch_size=0)
