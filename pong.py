import argparse
import logging
import sys

import pygame

from pong_core import (
    Action, Simulation, Snapshot,
    WIDTH, HEIGHT, PADDLE_W, PADDLE_H, BALL_SIZE, LEFT_PADDLE_X, RIGHT_PADDLE_X,
)

logger = logging.getLogger(__name__)

FPS = 60
FONT_NAME = "monospace"

WHITE = (240, 240, 240)
BG = (0, 0, 0)
DIM = (120, 120, 140)

HELP = "W/S = Left   Up/Down = Right   A = Hold for AI Right   P = Pause   R = Reset"

KEY_BINDINGS = {
    pygame.K_w: Action.MOVE_LEFT_UP,
    pygame.K_s: Action.MOVE_LEFT_DOWN,
    pygame.K_UP: Action.MOVE_RIGHT_UP,
    pygame.K_DOWN: Action.MOVE_RIGHT_DOWN,
    pygame.K_p: Action.TOGGLE_PAUSE,
    pygame.K_r: Action.RESET_MATCH,
    pygame.K_a: Action.HOLD_AI,
}


def held_actions(keys):
    """Map pygame key state (anything indexable by key code) to held actions."""
    return frozenset(action for key, action in KEY_BINDINGS.items() if keys[key])


def draw_center_dashed_line(surface):
    x = WIDTH // 2
    for y in range(0, HEIGHT, 18):
        pygame.draw.line(surface, DIM, (x, y), (x, y + 10), 2)


def draw(surface, snap: Snapshot, fonts):
    font_score, font_small, font_big = fonts
    surface.fill(BG)
    draw_center_dashed_line(surface)

    pygame.draw.rect(surface, WHITE, (LEFT_PADDLE_X, snap.left_y, PADDLE_W, PADDLE_H))
    pygame.draw.rect(surface, WHITE, (RIGHT_PADDLE_X, snap.right_y, PADDLE_W, PADDLE_H))
    pygame.draw.ellipse(surface, WHITE, (snap.ball_x, snap.ball_y, BALL_SIZE, BALL_SIZE))

    # HUD
    surface.blit(font_score.render(str(snap.score_left), True, WHITE), (WIDTH // 2 - 60, 14))
    surface.blit(font_score.render(str(snap.score_right), True, WHITE), (WIDTH // 2 + 45, 14))
    info_text = font_small.render(HELP, True, WHITE)
    surface.blit(info_text, (20, HEIGHT - 16 - info_text.get_height()))

    if snap.paused:
        paused_text = font_big.render("PAUSED", True, WHITE)
        paused_text.set_alpha(217)
        surface.blit(paused_text, (WIDTH // 2 - 95, HEIGHT // 2 - 150))


def game(fps=FPS, seed=None):
    pygame.init()
    screen = pygame.display.set_mode((WIDTH, HEIGHT))
    pygame.display.set_caption("Ping Pong")
    clock = pygame.time.Clock()
    fonts = (
        pygame.font.SysFont(FONT_NAME, 28),
        pygame.font.SysFont(FONT_NAME, 14),
        pygame.font.SysFont(FONT_NAME, 42),
    )

    sim = Simulation(seed=seed)
    logger.info(f"Starting match at {fps} fps (seed={seed})")
    first = True

    while True:
        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                pygame.quit(); sys.exit(0)
            if event.type == pygame.KEYDOWN and event.key == pygame.K_ESCAPE:
                pygame.quit(); sys.exit(0)

        dt_ms = clock.tick(fps)
        # The first frame only draws the initial layout.
        if first:
            first = False
        else:
            sim.advance(held_actions(pygame.key.get_pressed()), dt_ms)

        draw(screen, sim.snapshot(), fonts)
        pygame.display.flip()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Two-player ping pong with an optional AI right paddle")
    parser.add_argument("--fps", type=int, default=FPS)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(name)s %(levelname)s %(message)s")
    game(fps=args.fps, seed=args.seed)


if __name__ == "__main__":
    main()
