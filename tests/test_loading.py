import pytest
from dirty_equals import IsList
from pytest_django import DjangoAssertNumQueries

from bookstore.models import Author, Book, Customer, Order, Review, Supplier
from django_relation_builder import AttributeNotLoaded, InvalidQuery, LazyLoadViolation, ReadOnlyViolation
from django_relation_builder._eager import EagerJoinLoader
from django_relation_builder._preload import Preloader
from tests.test_project.factories import (
    AuthorFactory,
    BookFactory,
    CustomerFactory,
    OrderFactory,
    ReviewFactory,
    SupplierFactory,
)

pytestmark = pytest.mark.django_db


class TestPreload:
    @pytest.fixture(autouse=True)
    def authors(self) -> list[Author]:
        authors = AuthorFactory.create_batch(3)
        for author in authors:
            BookFactory(author=author, year_published=2001)
            BookFactory(author=author, year_published=2011)
        return authors

    def test_includes_is_one_query_per_association(self, django_assert_num_queries: DjangoAssertNumQueries):
        with django_assert_num_queries(2):
            authors = Author.relation.includes("books").order("pk").to_list()
            years = [[book.year_published for book in author.books.all()] for author in authors]

        # association scope orders the books newest first
        assert years == [[2011, 2001]] * 3

    def test_nested_paths(self, django_assert_num_queries: DjangoAssertNumQueries):
        for book in Book.relation:
            ReviewFactory(book=book)

        with django_assert_num_queries(4):
            authors = Author.relation.includes({"books": ["reviews", "supplier"]}).to_list()
            books = [book for author in authors for book in author.books.all()]
            ratings = [review.rating for book in books for review in book.reviews.all()]
            suppliers = {book.supplier.pk for book in books}

        assert len(ratings) == 6
        assert len(suppliers) == 6

    def test_has_many_sets_the_owner(self, django_assert_num_queries: DjangoAssertNumQueries):
        authors = Author.relation.preload("books").to_list()

        with django_assert_num_queries(0):
            assert all(book.author is author for author in authors for book in author.books.all())

    def test_target_default_scope_applies(self, authors: list[Author]):
        BookFactory(author=authors[0], year_published=1900)

        author = Author.relation.includes("books").find(authors[0].pk)

        assert author.books.count() == 2

    def test_belongs_to(self, django_assert_num_queries: DjangoAssertNumQueries, authors: list[Author]):
        with django_assert_num_queries(2):
            books = Book.relation.includes("author").to_list()
            assert {book.author.pk for book in books} == {author.pk for author in authors}

    def test_belongs_to_hidden_by_default_scope(self, django_assert_num_queries: DjangoAssertNumQueries):
        review = ReviewFactory(book=BookFactory(year_published=1900))

        loaded = Review.relation.includes("book").find(review.pk)

        assert loaded.book_id == review.book_id
        with django_assert_num_queries(0):
            with pytest.raises(Review.book.RelatedObjectDoesNotExist):
                loaded.book  # noqa: B018

    def test_many_to_many(self, django_assert_num_queries: DjangoAssertNumQueries):
        books = Book.relation.order("pk").to_list()
        order = OrderFactory(books=books[:2])
        OrderFactory(books=books[1:3])

        with django_assert_num_queries(2):
            orders = Order.relation.includes("books").order("pk").to_list()
            book_ids = [[book.pk for book in order.books.all()] for order in orders]

        assert orders[0] == order
        assert [sorted(ids) for ids in book_ids] == [[books[0].pk, books[1].pk], [books[1].pk, books[2].pk]]

    def test_through(self, django_assert_num_queries: DjangoAssertNumQueries, authors: list[Author]):
        supplier = SupplierFactory()
        BookFactory.create_batch(2, author=authors[0], supplier=supplier)
        BookFactory(author=authors[1], supplier=supplier)

        with django_assert_num_queries(2):
            loaded = Supplier.relation.includes("authors").find(supplier.pk)
            assert sorted(author.pk for author in loaded.authors) == [authors[0].pk, authors[1].pk]

        # lazily loaded, distinct
        assert len(Supplier.relation.find(supplier.pk).authors) == 2

    def test_through_applies_the_intermediate_default_scope(self, authors: list[Author]):
        supplier = SupplierFactory()
        BookFactory(author=authors[0], supplier=supplier)
        BookFactory(author=authors[1], supplier=supplier, year_published=1900)

        preloaded = Supplier.relation.includes("authors").find(supplier.pk)

        assert [author.pk for author in preloaded.authors] == [authors[0].pk]
        assert [author.pk for author in Supplier.relation.find(supplier.pk).authors] == [authors[0].pk]

    def test_preloader_validates_paths(self):
        with pytest.raises(InvalidQuery, match="Association named 'editor' was not found on Book"):
            Preloader(Author, ["books__editor"])

    def test_preloader_memoizes_belongs_to(self, django_assert_num_queries: DjangoAssertNumQueries):
        author = AuthorFactory()
        first, second = BookFactory.create_batch(2, author=author)
        preloader = Preloader(Book, ["author"], cache_size=10)

        first_batch = Book.relation.filter(pk=first.pk).to_list()
        books = Book.relation.filter(pk=second.pk).to_list()

        with django_assert_num_queries(1):
            preloader.preload(first_batch)
        with django_assert_num_queries(0):
            preloader.preload(books)

        assert books[0].author.pk == author.pk


class TestEagerJoin:
    def test_referenced_association_is_joined(self, django_assert_num_queries: DjangoAssertNumQueries):
        author = AuthorFactory()
        out_of_print = BookFactory(author=author, out_of_print=True)
        BookFactory(author=author, out_of_print=False)
        BookFactory(out_of_print=False)

        with django_assert_num_queries(1):
            authors = Author.relation.includes("books").filter(books={"out_of_print": True}).to_list()
            assert authors == [author]
            assert [book.pk for book in authors[0].books.all()] == [out_of_print.pk]

    def test_eager_load_nested(self, django_assert_num_queries: DjangoAssertNumQueries):
        review = ReviewFactory()

        with django_assert_num_queries(1):
            reviews = Review.relation.eager_load("book__author", "customer").to_list()
            assert reviews == [review]
            assert reviews[0].book.author.name == review.book.author.name
            assert reviews[0].customer.pk == review.customer_id

    def test_eager_load_collection_with_empty_owners(self, django_assert_num_queries: DjangoAssertNumQueries):
        lonely = AuthorFactory()
        author = AuthorFactory()
        BookFactory.create_batch(2, author=author)

        with django_assert_num_queries(1):
            authors = Author.relation.eager_load("books").order("pk").to_list()
            counts = [len(author.books.all()) for author in authors]

        assert [a.pk for a in authors] == [lonely.pk, author.pk]
        assert counts == [0, 2]

    def test_limit_with_a_joined_collection(self, django_assert_num_queries: DjangoAssertNumQueries):
        authors = AuthorFactory.create_batch(3)
        for author in authors:
            BookFactory.create_batch(3, author=author)

        with django_assert_num_queries(2):
            loaded = Author.relation.eager_load("books").order("pk").limit(2).to_list()

        assert loaded == authors[:2]
        assert [len(author.books.all()) for author in loaded] == [3, 3]

    def test_count_with_a_joined_collection_is_distinct(self):
        author = AuthorFactory()
        BookFactory.create_batch(2, author=author, out_of_print=True)

        authors = Author.relation.includes("books").filter(books={"out_of_print": True})

        assert authors.count() == 1

    def test_loader_directly(self):
        review = ReviewFactory()

        reviews = EagerJoinLoader(Review.relation, ["book"]).load()

        assert reviews == IsList(review)
        assert reviews[0].book.title == review.book.title


class TestStrictLoading:
    @pytest.fixture
    def author(self) -> Author:
        author = AuthorFactory()
        BookFactory(author=author)
        return author

    def test_strict_association(self, author: Author):
        loaded = Author.relation.find(author.pk)

        with pytest.raises(LazyLoadViolation, match="the books association cannot be lazily loaded"):
            list(loaded.books.all())
        with pytest.raises(LazyLoadViolation):
            loaded.association("books")

    def test_preloaded_strict_association(self, author: Author):
        loaded = Author.relation.includes("books").find(author.pk)

        assert len(loaded.books.all()) == 1
        assert len(loaded.association("books")) == 1

    def test_association_relation_is_explicit(self, author: Author):
        loaded = Author.relation.find(author.pk)

        assert loaded.association_relation("books").count() == 1

    def test_strict_relation(self):
        review = ReviewFactory()

        loaded = Review.relation.strict_loading().find(review.pk)

        assert loaded.is_strict_loading
        with pytest.raises(LazyLoadViolation, match="Review is marked for strict loading"):
            loaded.book  # noqa: B018
        assert Review.relation.strict_loading().includes("book").find(review.pk).book.pk == review.book_id

    def test_lenient_by_default(self):
        review = ReviewFactory()

        assert Review.relation.find(review.pk).book.pk == review.book_id


class TestPartialAndReadonlyRecords:
    def test_select(self):
        book = BookFactory(title="Dune")

        loaded = Book.relation.select("title").find(book.pk)

        assert loaded.title == "Dune"
        assert loaded.pk == book.pk
        with pytest.raises(AttributeNotLoaded, match="Attribute 'price' of Book was not selected"):
            loaded.price  # noqa: B018

        # reload lifts the restriction
        assert loaded.reload().price == book.price

    def test_select_unknown_column(self):
        with pytest.raises(InvalidQuery, match="Book has no column named 'reviews'"):
            Book.relation.select("reviews")

    def test_readonly(self):
        customer = CustomerFactory()

        loaded = Customer.relation.readonly().find(customer.pk)

        assert loaded.is_readonly
        with pytest.raises(ReadOnlyViolation, match="Cannot save a read-only Customer"):
            loaded.update(visits=4)
        with pytest.raises(ReadOnlyViolation, match="Cannot delete a read-only Customer"):
            loaded.delete()

    def test_select_with_preloaded_belongs_to(self, django_assert_num_queries: DjangoAssertNumQueries):
        author = AuthorFactory()
        BookFactory.create_batch(5, author=author)

        with django_assert_num_queries(2):
            books = Book.relation.select("title").includes("author").to_list()
            assert {book.author.pk for book in books} == {author.pk}

        with pytest.raises(AttributeNotLoaded):
            books[0].price  # noqa: B018
