"""Starter tutorial content for fresh stores."""
from typing import List

from smartassist.core.logging import get_logger
from smartassist.domain.dashboard import Table
from smartassist.domain.student import Tutorial

logger = get_logger(__name__)

STARTER_TUTORIALS = [
    {
        "tutorial_id": "TUT001",
        "title": "Introduction to JavaScript Variables",
        "steps": [
            "Step 1: Understanding Variables\n"
            "Variables are containers that store data values. Create them with let, const or var.\n"
            "Try it: create a variable called myName and assign your name to it.",
            "Step 2: Variable Types\n"
            "JavaScript has strings, numbers, booleans, arrays and objects.\n"
            "Try it: create variables of different types and log them with console.log().",
            "Step 3: Working with Variables\n"
            "Combine variables with arithmetic and string concatenation.\n"
            "Try it: create two numbers and apply +, -, * and / to them.",
            "Step 4: Challenge Exercise\n"
            "Declare your name, age and favorite color, compute your birth year and log an introduction.",
        ],
    },
    {
        "tutorial_id": "TUT002",
        "title": "JavaScript Functions and Loops",
        "steps": [
            "Step 1: Creating Functions\n"
            "Functions are reusable blocks of code.\n"
            "Try it: write a function greet(name) that returns a greeting.",
            "Step 2: Arrow Functions\n"
            "Arrow functions are a shorter syntax: const add = (a, b) => a + b;\n"
            "Try it: rewrite greet as an arrow function.",
            "Step 3: For Loops\n"
            "Loops repeat code: for (let i = 0; i < 5; i++) { ... }\n"
            "Try it: log the numbers 1 to 10.",
            "Step 4: Loops over Arrays\n"
            "Use for...of or forEach to visit every element.\n"
            "Try it: sum an array of numbers with a loop.",
            "Step 5: Challenge Exercise\n"
            "Write a function that returns only the even numbers of an array.",
        ],
    },
]


async def seed_tutorials(store) -> List[Tutorial]:
    """Insert the starter tutorials that are not in the store yet."""
    created = []
    for content in STARTER_TUTORIALS:
        existing = await store.select_one(
            Table.TUTORIALS, {"tutorial_id": content["tutorial_id"]}, required=False
        )
        if existing:
            continue
        tutorial = Tutorial(**content)
        await store.insert(Table.TUTORIALS, tutorial.model_dump())
        created.append(tutorial)
    if created:
        logger.info(f"Seeded {len(created)} tutorial(s)")
    return created
