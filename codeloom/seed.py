from __future__ import annotations

# Starter catalog inserted into an empty database.
STARTER_COURSES = [
    {
        "id": "c1",
        "title": "Web Development Fundamentals",
        "description": "Master the core technologies of the web: HTML, CSS, and JavaScript.",
        "image_url": "https://picsum.photos/seed/web/800/450",
        "modules": [
            {
                "id": "m1",
                "title": "HTML Basics",
                "lessons": [
                    {
                        "id": "l1",
                        "title": "What is HTML?",
                        "concept": (
                            "HTML (HyperText Markup Language) is the standard markup language "
                            "for documents designed to be displayed in a web browser."
                        ),
                        "example": "<!DOCTYPE html>\n<html>\n<body>\n<h1>Hello World</h1>\n</body>\n</html>",
                        "practice_guided": "Add a paragraph tag below the heading.",
                        "practice_independent": "Create a list of your favorite fruits.",
                        "language": "html",
                    }
                ],
            },
            {
                "id": "m2",
                "title": "CSS Styling",
                "lessons": [
                    {
                        "id": "l2",
                        "title": "CSS Selectors",
                        "concept": (
                            "CSS is used to style HTML elements. Selectors are used to 'find' "
                            "(or select) the HTML elements you want to style."
                        ),
                        "example": "h1 {\n  color: blue;\n  text-align: center;\n}",
                        "practice_guided": "Change the color of h1 to red.",
                        "practice_independent": "Style a paragraph with a green background and white text.",
                        "language": "css",
                    }
                ],
            },
        ],
    },
    {
        "id": "c2",
        "title": "Python for Beginners",
        "description": "Start your coding journey with one of the most popular programming languages.",
        "image_url": "https://picsum.photos/seed/python/800/450",
        "modules": [
            {
                "id": "m3",
                "title": "Python Basics",
                "lessons": [
                    {
                        "id": "l3",
                        "title": "Variables and Types",
                        "concept": (
                            "Python is a high-level, interpreted programming language. "
                            "Variables are containers for storing data values."
                        ),
                        "example": "name = 'Loom'\nage = 1\nprint(f'{name} is {age} year old.')",
                        "practice_guided": "Create a variable 'city' and assign it your city name.",
                        "practice_independent": "Calculate the area of a rectangle with width 5 and height 10.",
                        "language": "python",
                    }
                ],
            }
        ],
    },
]
