from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from categorizer import KeywordCategorizer, score_keywords, tokenize
from database import Base
from models import CategoryType, TransactionType
from schemas import CategoryIn
from services import CategoryService


def test_tokenize_lowercases_and_splits() -> None:
    assert tokenize("UBER *Trip 12/04") == ["uber", "trip", "12", "04"]


def test_phrase_keywords_need_whole_words() -> None:
    assert score_keywords("Shell gas station 42", ["gas station"]) == (2, ["gas station"])
    assert score_keywords("Gasstation", ["gas station"]) == (0, [])


def test_long_keywords_tolerate_one_typo() -> None:
    score, matched = score_keywords("Netflx subscription", ["netflix"])
    assert score == 1
    assert matched == ["netflix"]
    assert score_keywords("bux ride", ["bus"]) == (0, [])


def test_best_scoring_category_wins() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = CategoryService(session)
        service.create(
            CategoryIn(name="Shopping", type=CategoryType.expense, keywords=["amazon"])
        )
        books = service.create(
            CategoryIn(
                name="Books", type=CategoryType.expense, keywords=["amazon", "kindle"]
            )
        )
        service.create(CategoryIn(name="Refunds", type=CategoryType.income, keywords=["kindle"]))

        match = KeywordCategorizer(session, 1).predict(
            "Amazon Kindle unlimited", TransactionType.expense
        )

        assert match is not None
        assert match.category_id == books.id
        assert match.score == 4
        assert KeywordCategorizer(session, 1).predict("Bakery", TransactionType.expense) is None
