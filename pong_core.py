"""
Deterministic per-frame ping pong simulation.

The front end collects the currently held actions into a set each frame and
hands them to ``Simulation.advance`` together with the elapsed milliseconds.
Drawing code reads ``Simulation.snapshot()`` and never touches the state.

Motion is stepped once per frame and is not scaled by the frame time; the
speed ramp and spin constants are tuned against that fixed step.
"""
import enum
import logging
import math
import random
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

WIDTH, HEIGHT = 800, 500
PADDLE_W, PADDLE_H = 12, 90
PADDLE_INSET = 30
PADDLE_SPEED = 7.0
AI_SPEED_FACTOR = 0.95

BALL_SIZE = 12
BALL_SPEED_START = 5.0
BALL_SPEED_MAX = 13.0
BALL_ACCEL_ON_HIT = 0.35  # added to the speed on every paddle hit
SPIN_FACTOR = 4.0         # vertical kick per unit of impact offset
MIN_BOUNCE_VX = 2.5
BOUNCE_VX_SHARE = 0.7
LAUNCH_VX_SHARE = 0.85
LAUNCH_ANGLE = 0.3        # launch vy/speed ratio is drawn from [-0.3, 0.3)

LEFT_PADDLE_X = PADDLE_INSET
RIGHT_PADDLE_X = WIDTH - PADDLE_INSET - PADDLE_W


class Action(enum.Enum):
    MOVE_LEFT_UP = "move_left_up"
    MOVE_LEFT_DOWN = "move_left_down"
    MOVE_RIGHT_UP = "move_right_up"
    MOVE_RIGHT_DOWN = "move_right_down"
    TOGGLE_PAUSE = "toggle_pause"
    RESET_MATCH = "reset_match"
    HOLD_AI = "hold_ai"


def clamp(v, lo, hi):
    return max(lo, min(hi, v))


@dataclass
class Paddle:
    x: float
    y: float = (HEIGHT - PADDLE_H) / 2

    @property
    def center_y(self):
        return self.y + PADDLE_H / 2

    def move(self, dy):
        self.y += dy

    def clamp(self):
        self.y = clamp(self.y, 0, HEIGHT - PADDLE_H)

    def overlaps_y(self, ball):
        return ball.y + BALL_SIZE >= self.y and ball.y <= self.y + PADDLE_H


@dataclass
class Ball:
    x: float = (WIDTH - BALL_SIZE) / 2
    y: float = (HEIGHT - BALL_SIZE) / 2
    vx: float = 0.0
    vy: float = 0.0

    @property
    def center_y(self):
        return self.y + BALL_SIZE / 2

    @property
    def speed(self):
        return math.hypot(self.vx, self.vy)


@dataclass(frozen=True)
class Snapshot:
    """Read-only view of one frame for the drawing layer."""
    left_y: float
    right_y: float
    ball_x: float
    ball_y: float
    score_left: int
    score_right: int
    paused: bool
    ai_right: bool


def collide_with_paddle(ball: Ball, paddle: Paddle, left: bool):
    """Bounce ``ball`` off ``paddle``, adding spin and a bit of speed.

    The impact offset is measured from the paddle center in half-heights, so
    a hit on the very edge gives roughly +/-1. Spin is added to the current
    vertical velocity, which lets consecutive grazes on the same side stack.
    """
    if left:
        ball.x = LEFT_PADDLE_X + PADDLE_W
    else:
        ball.x = RIGHT_PADDLE_X - BALL_SIZE

    offset = (ball.center_y - paddle.center_y) / (PADDLE_H / 2)
    speed = min(BALL_SPEED_MAX, ball.speed + BALL_ACCEL_ON_HIT)

    new_vx = (1 if left else -1) * max(MIN_BOUNCE_VX, speed * BOUNCE_VX_SHARE)
    new_vy = clamp(ball.vy + offset * SPIN_FACTOR, -speed, speed)

    scale = speed / max(1e-6, math.hypot(new_vx, new_vy))
    ball.vx = new_vx * scale
    ball.vy = new_vy * scale
    return offset


def ai_step(paddle: Paddle, ball: Ball):
    # Chase the ball center; inside one step of the target the paddle holds still.
    target = ball.y - PADDLE_H / 2 + BALL_SIZE / 2
    if abs(target - paddle.y) > PADDLE_SPEED:
        paddle.move(math.copysign(PADDLE_SPEED * AI_SPEED_FACTOR, target - paddle.y))


def launch_velocity(rng: random.Random):
    direction = 1 if rng.random() < 0.5 else -1
    ratio = rng.random() * 2 * LAUNCH_ANGLE - LAUNCH_ANGLE
    vx = direction * LAUNCH_VX_SHARE
    vy = ratio
    scale = BALL_SPEED_START / math.hypot(vx, vy)
    return vx * scale, vy * scale


class Simulation:
    def __init__(self, rng: Optional[random.Random] = None, seed=None):
        self.rng = rng if rng is not None else random.Random(seed)
        self.left = Paddle(LEFT_PADDLE_X)
        self.right = Paddle(RIGHT_PADDLE_X)
        self.ball = Ball()
        self.score_left = 0
        self.score_right = 0
        self.paused = False
        self.ai_right = False
        self.frames = 0
        self.elapsed_ms = 0.0
        self.hard_reset()

    def soft_reset(self):
        self.left.y = (HEIGHT - PADDLE_H) / 2
        self.right.y = (HEIGHT - PADDLE_H) / 2
        self.ball.x = (WIDTH - BALL_SIZE) / 2
        self.ball.y = (HEIGHT - BALL_SIZE) / 2
        self.ball.vx, self.ball.vy = launch_velocity(self.rng)

    def hard_reset(self):
        self.soft_reset()
        self.score_left = 0
        self.score_right = 0

    def advance(self, inputs, dt_ms=0.0):
        """Process one frame of held ``inputs``.

        Pause engages while TOGGLE_PAUSE is held and stays engaged after the
        key is released; only RESET_MATCH clears it. HOLD_AI likewise hands
        the right paddle to the AI for the rest of the session. A frame that
        resets the match shows the fresh layout and skips physics.
        """
        self.frames += 1
        self.elapsed_ms += dt_ms

        if Action.TOGGLE_PAUSE in inputs and not self.paused:
            self.paused = True
            logger.info("Paused")
        reset = Action.RESET_MATCH in inputs
        if reset:
            self.hard_reset()
            if self.paused:
                logger.info("Unpaused by match reset")
            self.paused = False
            logger.info("Match reset")
        if Action.HOLD_AI in inputs and not self.ai_right:
            self.ai_right = True
            logger.info("AI took over the right paddle")

        if not self.paused and not reset:
            self._update(inputs)

    def _update(self, inputs):
        # Paddles
        if Action.MOVE_LEFT_UP in inputs:
            self.left.move(-PADDLE_SPEED)
        if Action.MOVE_LEFT_DOWN in inputs:
            self.left.move(PADDLE_SPEED)

        if self.ai_right:
            ai_step(self.right, self.ball)
        else:
            if Action.MOVE_RIGHT_UP in inputs:
                self.right.move(-PADDLE_SPEED)
            if Action.MOVE_RIGHT_DOWN in inputs:
                self.right.move(PADDLE_SPEED)

        self.left.clamp()
        self.right.clamp()

        # Ball
        ball = self.ball
        ball.x += ball.vx
        ball.y += ball.vy

        if ball.y <= 0:
            ball.y = 0
            ball.vy = abs(ball.vy)
        if ball.y + BALL_SIZE >= HEIGHT:
            ball.y = HEIGHT - BALL_SIZE
            ball.vy = -abs(ball.vy)

        if (LEFT_PADDLE_X - BALL_SIZE <= ball.x <= LEFT_PADDLE_X + PADDLE_W
                and self.left.overlaps_y(ball) and ball.vx < 0):
            collide_with_paddle(ball, self.left, left=True)

        if (ball.x + BALL_SIZE >= RIGHT_PADDLE_X and ball.x <= RIGHT_PADDLE_X + PADDLE_W
                and self.right.overlaps_y(ball) and ball.vx > 0):
            collide_with_paddle(ball, self.right, left=False)

        # Score
        if ball.x + BALL_SIZE < 0:
            self.score_right += 1
            logger.debug(f"Right scores: {self.score_left}-{self.score_right}")
            self.soft_reset()
        elif ball.x > WIDTH:
            self.score_left += 1
            logger.debug(f"Left scores: {self.score_left}-{self.score_right}")
            self.soft_reset()

    def snapshot(self) -> Snapshot:
        return Snapshot(
            left_y=self.left.y,
            right_y=self.right.y,
            ball_x=self.ball.x,
            ball_y=self.ball.y,
            score_left=self.score_left,
            score_right=self.score_right,
            paused=self.paused,
            ai_right=self.ai_right,
        )
