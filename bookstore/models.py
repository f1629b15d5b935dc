from __future__ import annotations

import datetime
import warnings
from decimal import Decimal

from django.db import models
from django.utils import timezone

from django_relation_builder import (
    AssociationOptions,
    EnumField,
    Range,
    Raw,
    Record,
    RecordForeignKey,
    Relation,
    register,
)

# books published longer ago than this are hidden by default
VISIBLE_YEARS = 50


def visible_since() -> int:
    return timezone.now().year - VISIBLE_YEARS


@register(
    associations={
        "books": AssociationOptions(scope=lambda books: books.order("-year_published"), strict_loading=True),
    }
)
class Author(Record):
    name = models.CharField(max_length=255, null=True)

    class Meta:
        db_table = "authors"

    def __str__(self):
        return self.name or f"Author {self.pk}"


@register(through={"authors": ("books", "author")})
class Supplier(Record):
    name = models.CharField(max_length=255, null=True)

    class Meta:
        db_table = "suppliers"

    def __str__(self):
        return self.name or f"Supplier {self.pk}"

    @property
    def authors(self) -> list[Author]:
        return self.association("authors")


class BookRelation(Relation):
    def in_print(self) -> BookRelation:
        return self.filter(out_of_print=False)

    def out_of_print(self) -> BookRelation:
        return self.filter(out_of_print=True)

    def recent(self) -> BookRelation:
        return self.filter(year_published=Range(visible_since()))

    def old(self) -> BookRelation:
        return self.filter(year_published=Range(high=visible_since(), exclusive=True))

    def created_before(self, time: datetime.datetime | None) -> BookRelation:
        if time is None:
            return self
        return self.filter(created_at__lt=time)

    def out_of_print_and_expensive(self) -> BookRelation:
        return self.out_of_print().filter(Raw("price > 500"))

    def costs_more_than(self, amount: Decimal | int) -> BookRelation:
        return self.filter(Raw("price > %s", [amount]))


@register(default_scope=lambda books: books.recent())
class Book(Record):
    title = models.CharField(max_length=255, null=True)
    year_published = models.IntegerField(null=True)
    print_year = models.IntegerField(null=True)
    out_of_print = models.BooleanField(null=True)
    price = models.DecimalField(max_digits=10, decimal_places=2, null=True)
    isbn = models.CharField(max_length=17, null=True)
    author = RecordForeignKey(Author, on_delete=models.CASCADE, related_name="books")
    supplier = RecordForeignKey(Supplier, on_delete=models.CASCADE, related_name="books")

    relation = BookRelation.as_descriptor()

    class Meta:
        db_table = "books"

    def __str__(self):
        return self.title or f"Book {self.pk}"

    def highlighted_reviews(self) -> Relation:
        reviews = self.association_relation("reviews")
        if reviews.count() > 5:
            return reviews
        return reviews.none()


@register(locking_column="lock_version", required=("orders_count",))
class Customer(Record):
    name = models.CharField(max_length=255, null=True)
    email = models.CharField(max_length=255, null=True)
    orders_count = models.IntegerField(null=True)
    visits = models.IntegerField(null=True)
    lock_version = models.IntegerField(null=True)

    class Meta:
        db_table = "customers"

    def __str__(self):
        return self.name or f"Customer {self.pk}"

    @property
    def lock_customer_column(self) -> int | None:
        warnings.warn("lock_customer_column is deprecated, use lock_version", DeprecationWarning, stacklevel=2)
        return self.lock_version

    @lock_customer_column.setter
    def lock_customer_column(self, value: int | None) -> None:
        warnings.warn("lock_customer_column is deprecated, use lock_version", DeprecationWarning, stacklevel=2)
        self.lock_version = value


class OrderRelation(Relation):
    def created_in_time_range(self, start: datetime.datetime, end: datetime.datetime) -> OrderRelation:
        return self.filter(created_at=Range(start, end))


@register()
class Order(Record):
    class Status(models.IntegerChoices):
        SHIPPED = 0
        BEING_PACKED = 1
        COMPLETE = 2
        CANCELLED = 3

    status = EnumField(Status, null=True)
    total = models.DecimalField(max_digits=10, decimal_places=2, null=True)
    customer = RecordForeignKey(Customer, on_delete=models.CASCADE, related_name="orders")
    books = models.ManyToManyField(Book, related_name="orders", db_table="books_orders")

    relation = OrderRelation.as_descriptor()

    class Meta:
        db_table = "orders"


@register(required=("rating", "content"))
class Review(Record):
    class State(models.IntegerChoices):
        NOT_REVIEWED = 0
        PUBLISHED = 1
        HIDDEN = 2

    rating = models.IntegerField(null=True)
    content = models.TextField(null=True)
    state = EnumField(State, default=State.NOT_REVIEWED, null=True)
    customer = RecordForeignKey(Customer, on_delete=models.CASCADE, related_name="reviews")
    book = RecordForeignKey(Book, on_delete=models.CASCADE, related_name="reviews")

    class Meta:
        db_table = "reviews"
