# dashboard.py
# streamlit run dashboard.py
import threading
import time
from dataclasses import replace

import matplotlib.pyplot as plt
import streamlit as st

from rl_pong_dqn import Config, PongEnv, Trainer, save_policy

MODEL_PATH = "dqn_pong.pt"


def trainer_thread_alive():
    thread = st.session_state.get("thread")
    return thread is not None and thread.is_alive()


def start_training(trainer):
    if trainer_thread_alive():
        return
    trainer.stop_flag.clear()
    trainer.pause(False)
    st.session_state.thread = threading.Thread(target=trainer.run, name="dqn-trainer", daemon=True)
    st.session_state.thread.start()


def stop_training(trainer):
    trainer.stop()
    if trainer_thread_alive():
        st.session_state.thread.join(timeout=1.0)
    st.session_state.thread = None


def sidebar_config(cfg: Config) -> Config:
    bar = st.sidebar
    bar.header("Hyperparameters")
    return replace(
        cfg,
        lr=bar.slider("Learning rate", 1e-5, 5e-3, value=cfg.lr, step=1e-5, format="%.5f"),
        gamma=bar.slider("Discount", 0.85, 0.999, value=cfg.gamma, step=0.001),
        eps_decay=bar.slider("Exploration decay (steps)", 5_000, 200_000, value=cfg.eps_decay, step=1000),
        batch_size=bar.select_slider("Batch", options=[32, 64, 128, 256, 512], value=cfg.batch_size),
        sync_every=bar.select_slider("Target sync every", options=[250, 500, 1000, 2000, 4000], value=cfg.sync_every),
        hidden=bar.select_slider("Layer width", options=[64, 128, 256], value=cfg.hidden),
    )


def plot(draw, title=None, xlabel=None, ylabel=None):
    fig, ax = plt.subplots()
    draw(ax)
    if title:
        ax.set_title(title)
    if xlabel:
        ax.set_xlabel(xlabel)
    if ylabel:
        ax.set_ylabel(ylabel)
    st.pyplot(fig, clear_figure=True)


def watch_episode(trainer, fps, max_steps=3000):
    """Greedy rally on a separate env; training stays paused meanwhile."""
    env = PongEnv(max_steps=max_steps)
    obs, done = env.reset(), False
    frame_slot = st.empty()
    while not done:
        obs, reward, done, info = env.step(int(trainer.q_values(obs).argmax()))
        left, right = info["score"]
        frame_slot.image(env.render_rgb(), channels="RGB", caption=f"frame {info['t']}  {left}:{right}")
        time.sleep(1.0 / fps)
    st.success("Agent won the rally" if reward > 0 else "AI won the rally" if reward < 0 else "Rally timed out")


st.set_page_config(layout="wide", page_title="Ping Pong DQN")
st.title("Ping Pong: DQN left paddle vs. AI")

state = st.session_state
state.setdefault("cfg", Config())
state.setdefault("thread", None)
if "trainer" not in state:
    state.trainer = Trainer(state.cfg)

st.sidebar.header("Training")
go, hold, restart, store = st.sidebar.columns(4)
if go.button("Start"):
    start_training(state.trainer)
if hold.button("Pause") and trainer_thread_alive():
    state.trainer.pause(not state.trainer.paused.is_set())
if restart.button("Reset"):
    stop_training(state.trainer)
    state.trainer = Trainer(state.cfg)
if store.button("Save"):
    save_policy(state.trainer.q, MODEL_PATH)
    st.sidebar.success(f"Saved {MODEL_PATH}")

state.cfg = sidebar_config(state.cfg)
state.trainer.update_config(state.cfg)
trainer = state.trainer

view, stats = st.columns(2)

with view:
    st.subheader("Court")
    st.image(trainer.env.render_rgb(), channels="RGB")
    snap = trainer.env.sim.snapshot()
    st.caption(f"Score {snap.score_left}:{snap.score_right}, ball speed {trainer.env.sim.ball.speed:.2f}")
    fps = st.slider("Replay speed (fps)", 10, 60, 30)
    if st.button("Watch the agent play a rally"):
        trainer.pause(True)
        try:
            watch_episode(trainer, fps)
        finally:
            trainer.pause(False)

with stats:
    st.subheader("Progress")
    steps_col, episodes_col, eps_col = st.columns(3)
    steps_col.metric("Steps", trainer.step_count)
    episodes_col.metric("Rallies", len(trainer.returns))
    eps_col.metric("Exploration", f"{trainer.epsilons[-1] if trainer.epsilons else trainer.cfg.eps_start:.3f}")

    returns, losses = list(trainer.returns), list(trainer.losses[-1000:])
    plot(lambda ax: ax.plot(returns), "Rally outcome", "Rally", "Return")
    plot(lambda ax: ax.plot(losses), "Huber loss (last 1000 updates)", "Update", "Loss")

    weights = dict(trainer.last_weights_snapshot)
    if weights:
        name = st.selectbox("Weights", sorted(k for k in weights if k.endswith("weight")))
        plot(lambda ax: ax.hist(weights[name].ravel(), bins=50), name)
    else:
        st.info("Weight histograms appear once updates start.")

    trainer.q_values(trainer.env.observe())
    layer = st.selectbox("Activations", list(trainer.q.activations))
    plot(lambda ax: ax.hist(trainer.q.activations[layer].ravel(), bins=50), f"{layer} activations")
