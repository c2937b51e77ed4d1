"""
Constants and configuration defaults for the attention model and crawler.
"""

# Categories (page types), in crawl order. Index = position in ranks arrays.
CATEGORIES = ("top", "new", "best", "ask", "show")
N_CATEGORIES = len(CATEGORIES)

# Feed layout
PAGE_SIZE = 30
N_PAGES = 3
MAX_RANK = PAGE_SIZE * N_PAGES  # 90

# Attention model coefficients: (category, page, per-page rank coefficients).
# Fitted offline with a log-log regression of upvote share on page and rank.
# Per-page rank coefficients are the fitted rank slope divided by the page
# number. The best/ask page coefficients were pulled down so the share stays
# strictly decreasing across page boundaries.
CATEGORY_COEFFICIENTS = (
    (-2.886938, -3.316492, (-0.5193376, -0.2596688, -0.1731125)),
    (-5.856364, -2.564690, (-0.3937709, -0.1968855, -0.1312570)),
    (-7.175409, -1.950000, (-0.3717084, -0.1858542, -0.1239028)),
    (-5.316879, -6.450000, (-1.2944215, -0.6472108, -0.4314738)),
    (-6.292276, -5.912105, (-1.1996512, -0.5998256, -0.3998837)),
)

# Upvote rate model
DEFAULT_FATIGUE_FACTOR = 0.003462767
DEFAULT_PRIOR_WEIGHT = 2.2956

# Front page ranking
FRONTPAGE_PRIOR_WEIGHT = 2.2956
FRONTPAGE_OVERALL_PRIOR_WEIGHT = 5.0
FRONTPAGE_GRAVITY = 1.4
HN_SCORE_POINTS_EXP = 0.8
HN_SCORE_TIME_OFFSET = 2
PENALTY_SMOOTHING = 0.1  # EMA weight of the newest penalty estimate
UNRANKED_PLOT_RANK = 91  # plotted in place of a missing rank

# Scheduling
CRAWL_INTERVAL_SECONDS = 60
CRAWL_DEADLINE_SLACK_SECONDS = 1
WAKE_TOLERANCE_SECONDS = 0.05  # loop timers and the wall clock drift apart
MIN_ARCHIVE_WINDOW_SECONDS = 5

# Story source
HN_API_BASE = "https://hacker-news.firebaseio.com/v0"
EXTERNAL_REQUEST_SEMAPHORE = 10
SOURCE_HTTP_TIMEOUT = 15.0
SOURCE_HTTP_CONNECT_TIMEOUT = 10.0
SOURCE_RETRY_ATTEMPTS = 3
SOURCE_RETRY_WAIT_MIN = 1.0
SOURCE_RETRY_WAIT_MAX = 5.0
CATEGORY_PAUSE_SECONDS = 0.1

# Archive / purge
ARCHIVE_WORKERS = 10
ARCHIVE_BATCH_SIZE = 20
ARCHIVE_AFTER_DAYS = 24
ARCHIVE_CONTENT_TYPE = "application/json"
ARCHIVE_HTTP_TIMEOUT = 30.0

# Storage
SQLITE_DATA_FILENAME = "frontpage.sqlite"
SQLITE_BUSY_TIMEOUT_MS = 5000

# Scoring
DEFAULT_SCORING_FORMULA = "LogPeerTruthSerum"
SCORE_SCALE = 100
SCORE_PAGE_SIZE = 1000
